from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from vidtube.logging import get_logger
from vidtube.service.errors import NotFoundError, ValidationError
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import ToggleKind, ToggleRecord, User, Video

logger = get_logger(__name__)

LIKE_KINDS = {
    "video": ToggleKind.LIKE_VIDEO,
    "comment": ToggleKind.LIKE_COMMENT,
    "tweet": ToggleKind.LIKE_TWEET,
}


class InteractionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_handle(self, handle: str) -> Optional[User]: ...

    def get_video(self, video_id: str) -> Optional[Video]: ...

    def get_comment(self, comment_id: str): ...

    def get_tweet(self, tweet_id: str): ...

    def list_videos_by_ids(self, video_ids: Iterable[str]) -> List[Video]: ...

    def record_view(
        self, actor_key: str, video_id: str, *, viewer_id: Optional[str] = None
    ) -> Optional[int]: ...

    def insert_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> ToggleRecord: ...

    def get_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> Optional[ToggleRecord]: ...

    def delete_toggle(self, kind: ToggleKind, actor_key: str, target_id: str) -> bool: ...

    def list_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[ToggleRecord]: ...

    def count_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> int: ...


@dataclass
class ToggleResult:
    kind: ToggleKind
    target_id: str
    active: bool


@dataclass
class ChannelProfile:
    channel: User
    subscriber_count: int
    subscribed_to_count: int
    is_subscribed: bool


@dataclass
class VideoStats:
    like_count: int
    is_liked: bool


class InteractionService:
    """Likes, subscriptions and view counting with at-most-one effect.

    Concurrency control is the store's uniqueness constraint on
    (kind, actor, target): a losing concurrent insert surfaces as
    ``ConstraintViolation`` and is read as "already on". Any other store
    error propagates unchanged.
    """

    def __init__(self, store: InteractionStore) -> None:
        self.store = store

    def _toggle(self, kind: ToggleKind, actor_key: str, target_id: str) -> ToggleResult:
        if self.store.get_toggle(kind, actor_key, target_id):
            self.store.delete_toggle(kind, actor_key, target_id)
            logger.info("toggle_off", kind=kind.value, target_id=target_id)
            return ToggleResult(kind=kind, target_id=target_id, active=False)
        try:
            self.store.insert_toggle(kind, actor_key, target_id)
        except ConstraintViolation:
            logger.info("toggle_insert_conflict", kind=kind.value, target_id=target_id)
        else:
            logger.info("toggle_on", kind=kind.value, target_id=target_id)
        return ToggleResult(kind=kind, target_id=target_id, active=True)

    def _require_like_target(self, kind: ToggleKind, target_id: str) -> None:
        if kind is ToggleKind.LIKE_VIDEO:
            target = self.store.get_video(target_id)
        elif kind is ToggleKind.LIKE_COMMENT:
            target = self.store.get_comment(target_id)
        else:
            target = self.store.get_tweet(target_id)
        if not target:
            raise NotFoundError(f"{kind.value.split(':', 1)[1]} not found")

    def toggle_like(self, actor_id: str, target_kind: str, target_id: str) -> ToggleResult:
        kind = LIKE_KINDS.get(target_kind)
        if kind is None:
            raise ValidationError(f"cannot like a {target_kind}")
        self._require_like_target(kind, target_id)
        return self._toggle(kind, actor_id, target_id)

    def toggle_subscription(self, subscriber_id: str, channel_id: str) -> ToggleResult:
        if subscriber_id == channel_id:
            raise ValidationError("cannot subscribe to your own channel")
        if not self.store.get_user(channel_id):
            raise NotFoundError("channel not found")
        return self._toggle(ToggleKind.SUBSCRIPTION, subscriber_id, channel_id)

    def record_view(
        self,
        video: Video,
        *,
        viewer_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Count a view at most once per (video, viewer or IP).

        Returns True only when this call incremented the counter. The owner
        never counts; watch history is only appended on a first view.
        """
        if viewer_id and viewer_id == video.owner_id:
            return False
        if viewer_id:
            actor_key = f"user:{viewer_id}"
        elif ip_address:
            actor_key = f"ip:{ip_address}"
        else:
            return False

        try:
            views = self.store.record_view(actor_key, video.id, viewer_id=viewer_id)
        except ConstraintViolation:
            return False
        if views is None:
            return False
        video.views = views
        logger.debug("view_recorded", video_id=video.id, authenticated=bool(viewer_id))
        return True

    def video_stats(self, video_id: str, viewer_id: Optional[str] = None) -> VideoStats:
        return VideoStats(
            like_count=self.store.count_toggles(ToggleKind.LIKE_VIDEO, target_id=video_id),
            is_liked=bool(
                viewer_id
                and self.store.get_toggle(ToggleKind.LIKE_VIDEO, viewer_id, video_id)
            ),
        )

    def liked_videos(self, user_id: str) -> List[Video]:
        records = self.store.list_toggles(ToggleKind.LIKE_VIDEO, actor_key=user_id)
        return self.store.list_videos_by_ids(record.target_id for record in records)

    def watch_history(self, user_id: str) -> List[Video]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return self.store.list_videos_by_ids(reversed(user.watch_history))

    def channel_profile(
        self, handle: str, viewer_id: Optional[str] = None
    ) -> ChannelProfile:
        channel = self.store.get_user_by_handle(handle)
        if not channel:
            raise NotFoundError("channel does not exist")
        is_subscribed = bool(
            viewer_id
            and self.store.get_toggle(ToggleKind.SUBSCRIPTION, viewer_id, channel.id)
        )
        return ChannelProfile(
            channel=channel.sanitized(),
            subscriber_count=self.store.count_toggles(
                ToggleKind.SUBSCRIPTION, target_id=channel.id
            ),
            subscribed_to_count=self.store.count_toggles(
                ToggleKind.SUBSCRIPTION, actor_key=channel.id
            ),
            is_subscribed=is_subscribed,
        )
