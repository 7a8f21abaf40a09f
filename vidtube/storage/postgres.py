from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vidtube.logging import get_logger
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import (
    Comment,
    ToggleKind,
    ToggleRecord,
    Tweet,
    User,
    Video,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        handle TEXT NOT NULL,
        email TEXT NOT NULL,
        fullname TEXT NOT NULL DEFAULT '',
        avatar_url TEXT,
        password_hash TEXT,
        refresh_token TEXT,
        reset_token_hash TEXT,
        reset_token_expires_at TIMESTAMPTZ,
        watch_history TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_handle_key UNIQUE (handle),
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS app_user_reset_token_idx
        ON app_user (reset_token_hash) WHERE reset_token_hash IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS video (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES app_user(id),
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        video_url TEXT,
        thumbnail_url TEXT,
        duration_seconds DOUBLE PRECISION NOT NULL DEFAULT 0,
        views BIGINT NOT NULL DEFAULT 0,
        is_published BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment (
        id TEXT PRIMARY KEY,
        video_id TEXT NOT NULL REFERENCES video(id),
        owner_id TEXT NOT NULL REFERENCES app_user(id),
        content TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tweet (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES app_user(id),
        content TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS toggle_record (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        actor_key TEXT NOT NULL,
        target_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT toggle_record_pair_key UNIQUE (kind, actor_key, target_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS toggle_record_target_idx
        ON toggle_record (kind, target_id)
    """,
)

_USER_COLUMNS = (
    "id, handle, email, fullname, avatar_url, password_hash, refresh_token, "
    "reset_token_hash, reset_token_expires_at, watch_history, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed store; uniqueness is enforced by table constraints."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            handle=row["handle"],
            email=row["email"],
            fullname=row.get("fullname") or "",
            avatar_url=row.get("avatar_url"),
            password_hash=row.get("password_hash"),
            refresh_token=row.get("refresh_token"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_token_expires_at=row.get("reset_token_expires_at"),
            watch_history=list(row.get("watch_history") or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _video_from_row(row: Dict[str, Any]) -> Video:
        return Video(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            description=row.get("description") or "",
            video_url=row.get("video_url"),
            thumbnail_url=row.get("thumbnail_url"),
            duration_seconds=float(row.get("duration_seconds") or 0.0),
            views=int(row.get("views") or 0),
            is_published=bool(row.get("is_published", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _toggle_from_row(row: Dict[str, Any]) -> ToggleRecord:
        return ToggleRecord(
            id=row["id"],
            kind=ToggleKind(row["kind"]),
            actor_key=row["actor_key"],
            target_id=row["target_id"],
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, handle, email, fullname, avatar_url, password_hash)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (str(uuid.uuid4()), handle, email, fullname, avatar_url, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "handle" if "handle" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _get_user_where(self, clause: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email.strip().lower())

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        return self._get_user_where("handle", handle.strip().lower())

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (refresh_token, user_id),
            )
            return cur.rowcount > 0

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET refresh_token = %s, updated_at = now()
                WHERE id = %s AND refresh_token = %s
                """,
                (new, user_id, expected),
            )
            return cur.rowcount == 1

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET reset_token_hash = %s, reset_token_expires_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )
            return cur.rowcount > 0

    def clear_reset_token(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET reset_token_hash = NULL, reset_token_expires_at = NULL, updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )
            return cur.rowcount > 0

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
        *,
        revoke_sessions: bool = True,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET password_hash = %s,
                    reset_token_hash = NULL,
                    reset_token_expires_at = NULL,
                    refresh_token = CASE WHEN %s THEN NULL ELSE refresh_token END,
                    updated_at = now()
                WHERE reset_token_hash = %s AND reset_token_expires_at > %s
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, revoke_sessions, token_hash, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO video (id, owner_id, title, description, video_url, thumbnail_url, duration_seconds)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    owner_id,
                    title,
                    description,
                    video_url,
                    thumbnail_url,
                    duration_seconds,
                ),
            ).fetchone()
        return self._video_from_row(row)

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM video WHERE id = %s", (video_id,)).fetchone()
        return self._video_from_row(row) if row else None

    def list_videos_by_ids(self, video_ids: Iterable[str]) -> List[Video]:
        ids = list(video_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM video WHERE id = ANY(%s)", (ids,)
            ).fetchall()
        by_id = {row["id"]: self._video_from_row(row) for row in rows}
        return [by_id[vid] for vid in ids if vid in by_id]

    def record_view(
        self, actor_key: str, video_id: str, *, viewer_id: Optional[str] = None
    ) -> Optional[int]:
        """Store a view record, bump the counter and extend watch history.

        One transaction on one connection: if any statement fails the view
        record is rolled back with it, so a retry can still count.
        """
        with self._connect() as conn:
            inserted = conn.execute(
                """
                INSERT INTO toggle_record (id, kind, actor_key, target_id)
                SELECT %s, %s, %s, id FROM video WHERE id = %s
                ON CONFLICT (kind, actor_key, target_id) DO NOTHING
                RETURNING id
                """,
                (str(uuid.uuid4()), ToggleKind.VIEW.value, actor_key, video_id),
            ).fetchone()
            if not inserted:
                return None
            row = conn.execute(
                "UPDATE video SET views = views + 1 WHERE id = %s RETURNING views",
                (video_id,),
            ).fetchone()
            if viewer_id:
                conn.execute(
                    """
                    UPDATE app_user SET watch_history = array_append(watch_history, %s)
                    WHERE id = %s AND NOT (%s = ANY(watch_history))
                    """,
                    (video_id, viewer_id, video_id),
                )
        return int(row["views"])

    def create_comment(self, video_id: str, owner_id: str, content: str) -> Comment:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO comment (id, video_id, owner_id, content)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), video_id, owner_id, content),
            ).fetchone()
        return Comment(**row)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM comment WHERE id = %s", (comment_id,)
            ).fetchone()
        return Comment(**row) if row else None

    def create_tweet(self, owner_id: str, content: str) -> Tweet:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO tweet (id, owner_id, content) VALUES (%s, %s, %s) RETURNING *",
                (str(uuid.uuid4()), owner_id, content),
            ).fetchone()
        return Tweet(**row)

    def get_tweet(self, tweet_id: str) -> Optional[Tweet]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tweet WHERE id = %s", (tweet_id,)).fetchone()
        return Tweet(**row) if row else None

    # toggles
    def insert_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> ToggleRecord:
        kind_value = ToggleKind(kind).value
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO toggle_record (id, kind, actor_key, target_id)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), kind_value, actor_key, target_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "toggle already exists", {"kind": kind_value, "target_id": target_id}
            )
        return self._toggle_from_row(row)

    def get_toggle(
        self, kind: ToggleKind, actor_key: str, target_id: str
    ) -> Optional[ToggleRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM toggle_record
                WHERE kind = %s AND actor_key = %s AND target_id = %s
                """,
                (ToggleKind(kind).value, actor_key, target_id),
            ).fetchone()
        return self._toggle_from_row(row) if row else None

    def delete_toggle(self, kind: ToggleKind, actor_key: str, target_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM toggle_record
                WHERE kind = %s AND actor_key = %s AND target_id = %s
                """,
                (ToggleKind(kind).value, actor_key, target_id),
            )
            return cur.rowcount > 0

    def _toggle_filter(
        self, kind: ToggleKind, actor_key: Optional[str], target_id: Optional[str]
    ) -> tuple[str, list]:
        clauses = ["kind = %s"]
        params: list = [ToggleKind(kind).value]
        if actor_key is not None:
            clauses.append("actor_key = %s")
            params.append(actor_key)
        if target_id is not None:
            clauses.append("target_id = %s")
            params.append(target_id)
        return " AND ".join(clauses), params

    def list_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[ToggleRecord]:
        where, params = self._toggle_filter(kind, actor_key, target_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM toggle_record WHERE {where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._toggle_from_row(row) for row in rows]

    def count_toggles(
        self,
        kind: ToggleKind,
        *,
        actor_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> int:
        where, params = self._toggle_filter(kind, actor_key, target_id)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS total FROM toggle_record WHERE {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0
