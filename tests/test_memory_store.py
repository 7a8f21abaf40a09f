from datetime import timedelta

import pytest

from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.memory import MemoryStore
from vidtube.storage.models import ToggleKind, utcnow


@pytest.fixture
def store():
    return MemoryStore()


def test_handle_and_email_unique_case_insensitively(store):
    store.create_user("Dave", "Dave@Example.com", "hash")
    with pytest.raises(ConstraintViolation) as handle_clash:
        store.create_user("dave", "other@example.com", "hash")
    assert handle_clash.value.detail == {"field": "handle"}
    with pytest.raises(ConstraintViolation) as email_clash:
        store.create_user("other", "DAVE@example.com", "hash")
    assert email_clash.value.detail == {"field": "email"}
    assert store.get_user_by_handle("DAVE").email == "dave@example.com"


def test_rotate_refresh_token_compare_and_swap(store):
    user = store.create_user("erin", "erin@example.com", "hash")
    assert store.rotate_refresh_token(user.id, "anything", "new") is False

    store.set_refresh_token(user.id, "r1")
    assert store.rotate_refresh_token(user.id, "stale", "r2") is False
    assert store.rotate_refresh_token(user.id, "r1", "r2") is True
    assert store.rotate_refresh_token(user.id, "r1", "r3") is False
    assert store.get_user(user.id).refresh_token == "r2"


def test_set_refresh_token_unknown_user(store):
    assert store.set_refresh_token("missing", "r1") is False


def test_consume_reset_token(store):
    user = store.create_user("frank", "frank@example.com", "old-hash")
    store.set_refresh_token(user.id, "r1")
    now = utcnow()
    store.set_reset_token(user.id, "token-hash", now + timedelta(minutes=10))

    assert store.consume_reset_token("wrong-hash", "new-hash", now) is None
    consumed = store.consume_reset_token("token-hash", "new-hash", now)
    assert consumed.id == user.id
    stored = store.get_user(user.id)
    assert stored.password_hash == "new-hash"
    assert stored.reset_token_hash is None
    assert stored.reset_token_expires_at is None
    assert stored.refresh_token is None
    assert store.consume_reset_token("token-hash", "newer-hash", now) is None


def test_consume_reset_token_at_expiry(store):
    user = store.create_user("gina", "gina@example.com", "old-hash")
    expires_at = utcnow()
    store.set_reset_token(user.id, "token-hash", expires_at)
    assert store.consume_reset_token("token-hash", "new-hash", expires_at) is None
    assert store.get_user(user.id).password_hash == "old-hash"


def test_toggle_uniqueness_and_delete(store):
    store.insert_toggle(ToggleKind.LIKE_VIDEO, "u1", "v1")
    with pytest.raises(ConstraintViolation):
        store.insert_toggle(ToggleKind.LIKE_VIDEO, "u1", "v1")
    # same pair under another kind is a different record
    store.insert_toggle(ToggleKind.VIEW, "u1", "v1")

    assert store.delete_toggle(ToggleKind.LIKE_VIDEO, "u1", "v1") is True
    assert store.delete_toggle(ToggleKind.LIKE_VIDEO, "u1", "v1") is False
    assert store.count_toggles(ToggleKind.VIEW, actor_key="u1") == 1


def test_record_view_counts_once_and_extends_history(store):
    user = store.create_user("hank", "hank@example.com", "hash")
    video = store.create_video("someone-else", "Clip")
    assert store.record_view(f"user:{user.id}", video.id, viewer_id=user.id) == 1
    assert store.record_view(f"user:{user.id}", video.id, viewer_id=user.id) is None
    assert store.record_view("ip:10.0.0.1", video.id) == 2
    assert store.get_user(user.id).watch_history == [video.id]
    assert store.record_view("ip:10.0.0.1", "missing-video") is None


def test_record_view_failure_leaves_nothing_behind():
    class FlakyStore(MemoryStore):
        failures = 1

        def insert_toggle(self, kind, actor_key, target_id):
            if self.failures:
                self.failures -= 1
                raise RuntimeError("write failed")
            return super().insert_toggle(kind, actor_key, target_id)

    store = FlakyStore()
    user = store.create_user("jill", "jill@example.com", "hash")
    video = store.create_video("someone-else", "Clip")

    with pytest.raises(RuntimeError):
        store.record_view(f"user:{user.id}", video.id, viewer_id=user.id)
    assert store.get_video(video.id).views == 0
    assert store.get_user(user.id).watch_history == []
    assert store.count_toggles(ToggleKind.VIEW, target_id=video.id) == 0

    assert store.record_view(f"user:{user.id}", video.id, viewer_id=user.id) == 1


def test_sanitized_copy_hides_secrets(store):
    user = store.create_user("ivy", "ivy@example.com", "hash")
    store.set_refresh_token(user.id, "r1")
    clean = store.get_user(user.id).sanitized()
    assert clean.password_hash is None
    assert clean.refresh_token is None
    assert store.get_user(user.id).refresh_token == "r1"
