from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    handle: str
    email: str
    fullname: str = ""
    avatar_url: Optional[str] = None
    password_hash: Optional[str] = None
    refresh_token: Optional[str] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    watch_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def sanitized(self) -> "User":
        """Copy without password hash, refresh value or reset fields."""
        return dataclasses.replace(
            self,
            password_hash=None,
            refresh_token=None,
            reset_token_hash=None,
            reset_token_expires_at=None,
            watch_history=list(self.watch_history),
        )


@dataclass
class Video:
    id: str
    owner_id: str
    title: str
    description: str = ""
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: float = 0.0
    views: int = 0
    is_published: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment:
    id: str
    video_id: str
    owner_id: str
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tweet:
    id: str
    owner_id: str
    content: str
    created_at: datetime = field(default_factory=utcnow)


class ToggleKind(str, Enum):
    """Interaction kinds; each keeps its own (actor, target) uniqueness."""

    LIKE_VIDEO = "like:video"
    LIKE_COMMENT = "like:comment"
    LIKE_TWEET = "like:tweet"
    SUBSCRIPTION = "subscription"
    VIEW = "view"


@dataclass
class ToggleRecord:
    """Existence of the row is the "on" state for (kind, actor_key, target_id).

    ``actor_key`` is a user id for likes and subscriptions; views use
    ``user:<id>`` or ``ip:<address>``.
    """

    id: str
    kind: ToggleKind
    actor_key: str
    target_id: str
    created_at: datetime = field(default_factory=utcnow)
