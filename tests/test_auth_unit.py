"""Unit tests for the token authority.

Tests for:
- Password hashing and verification
- Registration and login
- Access token verification and expiry boundary
- Refresh rotation and reuse rejection
- Logout invalidation
"""

from datetime import datetime, timedelta, timezone

import pytest

from vidtube.config import Settings
from vidtube.service.errors import (
    ConflictError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    RefreshRevokedError,
    UnauthenticatedError,
)
from vidtube.service.tokens import AuthService
from vidtube.storage.memory import MemoryStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="access-secret-for-automation-only",
        refresh_token_secret="refresh-secret-for-automation-only",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(store, settings, clock):
    return AuthService(store, settings, clock=clock)


@pytest.fixture
def user(store, auth):
    return store.create_user(
        "alice", "alice@example.com", auth.hash_password("CorrectHorse1"), fullname="Alice"
    )


class TestPasswordHashing:
    def test_hash_is_argon2_and_not_plaintext(self, auth):
        password_hash = auth.hash_password("CorrectHorse1")
        assert password_hash != "CorrectHorse1"
        assert password_hash.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, auth):
        assert auth.hash_password("CorrectHorse1") != auth.hash_password("CorrectHorse1")

    def test_verify_password(self, auth, user):
        assert auth.verify_password(user.id, "CorrectHorse1") is True
        assert auth.verify_password(user.id, "wrong-password") is False
        assert auth.verify_password("missing-user", "CorrectHorse1") is False


class TestRegisterAndLogin:
    @pytest.mark.asyncio
    async def test_register_returns_sanitized_user(self, auth):
        user = await auth.register(
            handle="Bob", email="Bob@Example.com", password="CorrectHorse1"
        )
        assert user.handle == "bob"
        assert user.email == "bob@example.com"
        assert user.password_hash is None
        assert user.refresh_token is None

    @pytest.mark.asyncio
    async def test_register_conflict_on_case_variant(self, auth, user):
        with pytest.raises(ConflictError):
            await auth.register(handle="ALICE", email="new@example.com", password="x" * 8)
        with pytest.raises(ConflictError):
            await auth.register(handle="other", email="ALICE@example.com", password="x" * 8)

    @pytest.mark.asyncio
    async def test_login_by_handle_or_email(self, auth, user, store):
        _, tokens = await auth.login("alice", "CorrectHorse1")
        assert store.get_user(user.id).refresh_token == tokens.refresh_token
        logged_in, _ = await auth.login("Alice@Example.com", "CorrectHorse1")
        assert logged_in.id == user.id

    @pytest.mark.asyncio
    async def test_login_failures_look_the_same(self, auth, user):
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth.login("alice", "nope-nope")
        with pytest.raises(InvalidCredentialsError) as unknown_user:
            await auth.login("nobody", "CorrectHorse1")
        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.status_code == 401

    @pytest.mark.asyncio
    async def test_change_password_requires_current(self, auth, user):
        with pytest.raises(InvalidCredentialsError):
            await auth.change_password(user.id, "wrong", "NewPassword1")
        await auth.change_password(user.id, "CorrectHorse1", "NewPassword1")
        assert auth.verify_password(user.id, "NewPassword1")


class TestAccessVerification:
    @pytest.mark.asyncio
    async def test_verify_access_resolves_user(self, auth, user):
        tokens = await auth.issue(user)
        resolved = await auth.verify_access(tokens.access_token)
        assert resolved.id == user.id
        assert resolved.password_hash is None

    @pytest.mark.asyncio
    async def test_missing_token(self, auth):
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(None)
        assert await auth.verify_access(None, optional=True) is None

    @pytest.mark.asyncio
    async def test_expiry_boundary(self, auth, user, clock):
        tokens = await auth.issue(user)
        expires_at = tokens.access_expires_at

        clock.now = expires_at - timedelta(seconds=1)
        assert (await auth.verify_access(tokens.access_token)).id == user.id

        clock.now = expires_at
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(tokens.access_token)

        clock.now = expires_at + timedelta(seconds=1)
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(tokens.access_token)
        assert await auth.verify_access(tokens.access_token, optional=True) is None

    @pytest.mark.asyncio
    async def test_tampered_signature_rejected(self, auth, user):
        tokens = await auth.issue(user)
        head, payload, _ = tokens.access_token.split(".")
        forged = f"{head}.{payload}.{'A' * 43}"
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(forged)

    @pytest.mark.asyncio
    async def test_non_ascii_token_is_unauthenticated(self, auth, user):
        tokens = await auth.issue(user)
        garbled = tokens.access_token[:-1] + "\u00e9"
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(garbled)
        assert await auth.verify_access(garbled, optional=True) is None
        assert await auth.verify_access("\u0442\u043e\u043a\u0435\u043d", optional=True) is None

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, auth, user):
        tokens = await auth.issue(user)
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_token_from_other_issuer_rejected(self, auth, user, store, clock):
        other = AuthService(
            store,
            Settings(
                access_token_secret="access-secret-for-automation-only",
                refresh_token_secret="refresh-secret-for-automation-only",
                jwt_issuer="someone-else",
            ),
            clock=clock,
        )
        tokens = await other.issue(user)
        with pytest.raises(UnauthenticatedError):
            await auth.verify_access(tokens.access_token)

    @pytest.mark.asyncio
    async def test_deleted_subject(self, auth, user, store):
        tokens = await auth.issue(user)
        store.users.pop(user.id)
        with pytest.raises(IdentityNotFoundError):
            await auth.verify_access(tokens.access_token)
        assert await auth.verify_access(tokens.access_token, optional=True) is None


class TestRefreshRotation:
    @pytest.mark.asyncio
    async def test_refresh_rotates_and_old_token_is_rejected(self, auth, user, store):
        first = await auth.issue(user)
        _, second = await auth.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert store.get_user(user.id).refresh_token == second.refresh_token

        with pytest.raises(RefreshRevokedError):
            await auth.refresh(first.refresh_token)
        # the reuse attempt does not revoke the current token
        _, third = await auth.refresh(second.refresh_token)
        assert store.get_user(user.id).refresh_token == third.refresh_token

    @pytest.mark.asyncio
    async def test_reissue_revokes_previous_refresh(self, auth, user):
        first = await auth.issue(user)
        await auth.issue(user)
        with pytest.raises(RefreshRevokedError):
            await auth.refresh(first.refresh_token)

    @pytest.mark.asyncio
    async def test_lost_rotation_race_is_rejected(self, auth, user, store):
        tokens = await auth.issue(user)
        original = store.rotate_refresh_token

        def rotate_after_competitor(user_id, expected, new):
            original(user_id, expected, "competitor-token")
            return original(user_id, expected, new)

        store.rotate_refresh_token = rotate_after_competitor
        with pytest.raises(RefreshRevokedError):
            await auth.refresh(tokens.refresh_token)
        assert store.get_user(user.id).refresh_token == "competitor-token"

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, auth, user):
        tokens = await auth.issue(user)
        with pytest.raises(UnauthenticatedError):
            await auth.refresh(tokens.access_token)

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, auth, user, clock):
        tokens = await auth.issue(user)
        clock.now = tokens.refresh_expires_at
        with pytest.raises(UnauthenticatedError):
            await auth.refresh(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_non_ascii_refresh_token(self, auth, user, store):
        tokens = await auth.issue(user)
        with pytest.raises(UnauthenticatedError):
            await auth.refresh(tokens.refresh_token[:-1] + "\u00e9")
        assert store.get_user(user.id).refresh_token == tokens.refresh_token

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, auth):
        with pytest.raises(UnauthenticatedError):
            await auth.refresh(None)


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_invalidate_is_idempotent(self, auth, user, store):
        tokens = await auth.issue(user)
        await auth.invalidate(user.id)
        await auth.invalidate(user.id)
        assert store.get_user(user.id).refresh_token is None
        with pytest.raises(RefreshRevokedError):
            await auth.refresh(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_invalidate_unknown_user_is_noop(self, auth):
        await auth.invalidate("missing-user")


def test_extract_bearer(auth):
    assert auth.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
    assert auth.extract_bearer("bearer xyz") == "xyz"
    assert auth.extract_bearer("Basic abc") is None
    assert auth.extract_bearer(None) is None
