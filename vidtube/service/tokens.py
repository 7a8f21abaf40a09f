from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vidtube.config import Settings
from vidtube.logging import get_logger
from vidtube.service.errors import (
    ConflictError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    RefreshRevokedError,
    UnauthenticatedError,
)
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenStore(Protocol):
    def create_user(
        self,
        handle: str,
        email: str,
        password_hash: str,
        *,
        fullname: str = "",
        avatar_url: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_handle(self, handle: str) -> Optional[User]: ...

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> bool: ...

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Issues, verifies, rotates and revokes access/refresh credentials.

    Access tokens are stateless. Refresh tokens are signed too, but one is
    only accepted while it equals the value stored on the user record, so
    rotating or clearing that value revokes every older refresh token.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: TokenStore = store
        self.settings = settings
        self.clock = clock or _utcnow
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def _now(self) -> datetime:
        return self.clock()

    # accounts
    async def register(
        self,
        *,
        handle: str,
        email: str,
        password: str,
        fullname: str = "",
        avatar_url: Optional[str] = None,
    ) -> User:
        password_hash = self.hash_password(password)
        try:
            user = self.store.create_user(
                handle,
                email,
                password_hash,
                fullname=fullname,
                avatar_url=avatar_url,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", field=exc.detail.get("field"))
            raise ConflictError("user with handle or email already exists")
        self.logger.info("user_registered", user_id=user.id)
        return user.sanitized()

    async def login(self, identifier: str, password: str) -> Tuple[User, TokenPair]:
        """Authenticate by handle or email; both failure causes look the same."""
        normalized = identifier.strip().lower()
        user = (
            self.store.get_user_by_email(normalized)
            if "@" in normalized
            else self.store.get_user_by_handle(normalized)
        )
        if not user or not self._check_password(user.password_hash, password):
            self.logger.warning("login_failed", user_id=user.id if user else None)
            raise InvalidCredentialsError()
        tokens = await self.issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user.sanitized(), tokens

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        if not self.verify_password(user_id, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        self.store.set_password_hash(user_id, self.hash_password(new_password))
        self.logger.info("password_changed", user_id=user_id)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        user = self.store.get_user(user_id)
        if not user:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        if not self._check_password(user.password_hash, password):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False
        return True

    # credentials
    async def issue(self, user: User) -> TokenPair:
        """Mint a token pair and make its refresh token the only valid one."""
        tokens = self._sign_pair(user)
        if not self.store.set_refresh_token(user.id, tokens.refresh_token):
            raise IdentityNotFoundError()
        return tokens

    async def verify_access(
        self, token: Optional[str], *, optional: bool = False
    ) -> Optional[User]:
        """Resolve an access token to a sanitized user.

        With ``optional=True`` every failure yields ``None`` so the caller can
        continue as a guest.
        """
        try:
            if not token:
                raise UnauthenticatedError()
            payload = self._decode_jwt(
                token, self.settings.access_token_secret, ACCESS_TOKEN_TYPE
            )
            if not payload:
                raise UnauthenticatedError()
            user = self.store.get_user(str(payload.get("sub")))
            if not user:
                self.logger.warning("access_token_subject_missing", user_id=payload.get("sub"))
                raise IdentityNotFoundError()
        except (UnauthenticatedError, IdentityNotFoundError):
            if optional:
                return None
            raise
        return user.sanitized()

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
        if not refresh_token:
            raise UnauthenticatedError()
        payload = self._decode_jwt(
            refresh_token, self.settings.refresh_token_secret, REFRESH_TOKEN_TYPE
        )
        if not payload:
            raise UnauthenticatedError()
        user = self.store.get_user(str(payload.get("sub")))
        if not user:
            raise IdentityNotFoundError()
        if user.refresh_token is None or not hmac.compare_digest(
            user.refresh_token, refresh_token
        ):
            self.logger.warning("refresh_token_reuse_detected", user_id=user.id)
            raise RefreshRevokedError()
        tokens = self._sign_pair(user)
        if not self.store.rotate_refresh_token(user.id, refresh_token, tokens.refresh_token):
            # another request rotated between our read and the swap
            self.logger.warning("refresh_token_rotation_lost", user_id=user.id)
            raise RefreshRevokedError()
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return user.sanitized(), tokens

    async def invalidate(self, user_id: str) -> None:
        """Clear the stored refresh token (logout). Safe to repeat."""
        self.store.set_refresh_token(user_id, None)
        self.logger.info("refresh_token_cleared", user_id=user_id)

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    # JWT
    def _sign_pair(self, user: User) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        common = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "iat": int(now.timestamp()),
        }
        access_payload = {
            **common,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "exp": int(access_exp.timestamp()),
            "handle": user.handle,
            "email": user.email,
            "fullname": user.fullname,
        }
        refresh_payload = {
            **common,
            "typ": REFRESH_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self.settings.access_token_secret),
            refresh_token=self._encode_jwt(
                refresh_payload, self.settings.refresh_token_secret
            ),
            access_expires_at=datetime.fromtimestamp(access_payload["exp"], timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_payload["exp"], timezone.utc),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(
        self, token: str, secret: str, expected_type: str
    ) -> Optional[dict[str, Any]]:
        # compare_digest refuses non-ASCII str; no valid token contains any
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # pin the algorithm so a forged header cannot pick another one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != expected_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        cutoff = self._now() - self._clock_skew_leeway
        if exp_ts <= cutoff.timestamp():
            return None
        return payload
