from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from vidtube.logging import get_logger
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import (
    Comment,
    ToggleKind,
    ToggleRecord,
    Tweet,
    User,
    Video,
    utcnow,
)

_ToggleKey = Tuple[str, str, str]


class MemoryStore:
    """In-process backing store for tests and single-process development.

    Every method holds ``_data_lock`` for its whole read/check/write so that
    the uniqueness and compare-and-swap guarantees match the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._user_ids_by_handle: Dict[str, str] = {}
        self._user_ids_by_email: Dict[str, str] = {}
        self.videos: Dict[str, Video] = {}
        self.comments: Dict[str, Comment] = {}
        self.tweets: Dict[str, Tweet] = {}
        self.toggles: Dict[_ToggleKey, ToggleRecord] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        handle: str,
        email: str,
        password_hash: str,
        *,
        fullname: str = "",
        avatar_url: Optional[str] = None,
    ) -> User:
        handle = handle.strip().lower()
        email = email.strip().lower()
        with self._data_lock:
            if handle in self._user_ids_by_handle:
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            if email in self._user_ids_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                handle=handle,
                email=email,
                fullname=fullname,
                avatar_url=avatar_url,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            self._user_ids_by_handle[handle] = user.id
            self._user_ids_by_email[email] = user.id
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._user_ids_by_email.get(email.strip().lower())
            return self.users.get(user_id) if user_id else None

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._user_ids_by_handle.get(handle.strip().lower())
            return self.users.get(user_id) if user_id else None

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token = refresh_token
            user.updated_at = utcnow()
            return True

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token is None or user.refresh_token != expected:
                return False
            user.refresh_token = new
            user.updated_at = utcnow()
            return True

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return True

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.reset_token_hash = token_hash
            user.reset_token_expires_at = expires_at
            user.updated_at = utcnow()
            return True

    def clear_reset_token(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.reset_token_hash = None
            user.reset_token_expires_at = None
            user.updated_at = utcnow()
            return True

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
        *,
        revoke_sessions: bool = True,
    ) -> Optional[User]:
        """Set a new password for the holder of an unexpired reset token.

        Matching, the password update and clearing the reset fields happen in
        one locked step, so a replayed token never matches again.
        """
        with self._data_lock:
            for user in self.users.values():
                if user.reset_token_hash != token_hash:
                    continue
                expires_at = user.reset_token_expires_at
                if expires_at is None or expires_at <= now:
                    return None
                user.password_hash = password_hash
                user.reset_token_hash = None
                user.reset_token_expires_at = None
                if revoke_sessions:
                    user.refresh_token = None
                user.updated_at = utcnow()
                return user
            return None

    # content
    def create_video(
        self,
        owner_id: str,
        title: str,
        *,
        description: str = "",
        video_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        duration_seconds: float = 0.0,
    ) -> Video:
        with self._data_lock:
            video = Video(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                title=title,
                description=description,
                video_url=video_url,
                thumbnail_url=thumbnail_url,
                duration_seconds=duration_seconds,
            )
            self.videos[video.id] = video
            return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._data_lock:
            return self.videos.get(video_id)

    def list_videos_by_ids(self, video_ids: Iterable[str]) -> List[Video]:
        with self._data_lock:
            return [self.videos[vid] for vid in video_ids if vid in self.videos]

    def record_view(
        self, actor_key: str, video_id: str, *, viewer_id: Optional[str] = None
    ) -> Optional[int]:
        """Store a view record, bump the counter and extend watch history.

        All three happen under one lock hold. Returns the new view count, or
        None when the actor already viewed the video or the video is gone.
        """
        key = (ToggleKind.VIEW.value, actor_key, video_id)
        with self._data_lock:
            video = self.videos.get(video_id)
            if video is None or key in self.toggles:
                return None
            user = self.users.get(viewer_id) if viewer_id else None
            self.insert_toggle(ToggleKind.VIEW, actor_key, video_id)
            video.views += 1
            if user is not None and video_id not in user.watch_history:
                user.watch_history.append(video_id)
            return video.views

    def create_comment(self, video_id: str, owner_id: str, content: str) -> Comment:
        with self._data_lock:
            comment = Comment(
                id=str(uuid.uuid4()),
                video_id=video_id,
                owner_id=owner_id,
                content=content,
            )
            self.comments[comment.id] = comment
            return comment

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._data_lock:
            return self.comments.get(comment_id)

    def create_tweet(self, owner_id: str, content: str) -> Tweet:
        with self._data_lock:
            tweet = Tweet(id=str(uuid.uuid4()), owner_id=owner_id, content=content)
            self.tweets[tweet.id] = tweet
            return tweet

    def get_tweet(self, tweet_id: str) -> Optional[Tweet]:
        with self._data_lock:
            return self.tweets.get(tweet_id)

    # toggles
    def insert_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> ToggleRecord:
        key = (ToggleKind(kind).value, actor_key, target_id)
        with self._data_lock:
            if key in self.toggles:
                raise ConstraintViolation(
                    "toggle already exists",
                    {"kind": key[0], "target_id": target_id},
                )
            record = ToggleRecord(
                id=str(uuid.uuid4()),
                kind=ToggleKind(kind),
                actor_key=actor_key,
                target_id=target_id,
            )
            self.toggles[key] = record
            return record

    def get_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> Optional[ToggleRecord]:
        with self._data_lock:
            return self.toggles.get((ToggleKind(kind).value, actor_key, target_id))

    def delete_toggle(self, kind: ToggleKind, actor_key: str, target_id: str) -> bool:
        with self._data_lock:
            removed = self.toggles.pop(
                (ToggleKind(kind).value, actor_key, target_id), None
            )
            return removed is not None

    def list_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[ToggleRecord]:
        kind_value = ToggleKind(kind).value
        with self._data_lock:
            records = [
                record
                for (k, actor, target), record in self.toggles.items()
                if k == kind_value
                and (actor_key is None or actor == actor_key)
                and (target_id is None or target == target_id)
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def count_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> int:
        return len(self.list_toggles(kind, actor_key=actor_key, target_id=target_id))
