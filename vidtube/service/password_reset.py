from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from vidtube.config import Settings
from vidtube.logging import get_logger
from vidtube.service.email import EmailService
from vidtube.service.errors import EmailDeliveryError, InvalidOrExpiredTokenError
from vidtube.service.tokens import AuthService
from vidtube.storage.models import User

logger = get_logger(__name__)


class ResetStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool: ...

    def clear_reset_token(self, user_id: str) -> bool: ...

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
        *,
        revoke_sessions: bool = True,
    ) -> Optional[User]: ...


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class PasswordResetService:
    """Single-use, time-boxed password reset tokens.

    Only the SHA-256 of a token is stored. Completing a reset clears the
    token fields in the same store write that sets the new password.
    """

    def __init__(
        self,
        store: ResetStore,
        auth: AuthService,
        email: EmailService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.auth = auth
        self.email = email
        self.settings = settings
        self.clock = clock or auth.clock

    def reset_url(self, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/reset-password/{token}"

    async def request_reset(self, email: str) -> None:
        normalized = email.strip().lower()
        email_hash = hashlib.sha256(normalized.encode()).hexdigest()
        user = self.store.get_user_by_email(normalized)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_hash)
            return

        token = secrets.token_hex(32)
        expires_at = self.clock() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.store.set_reset_token(user.id, hash_reset_token(token), expires_at)

        try:
            # SMTP blocks; keep it off the event loop
            sent = await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                self.reset_url(token),
                user.handle,
                ttl_minutes=self.settings.reset_token_ttl_minutes,
            )
        except Exception as exc:
            logger.error(
                "password_reset_email_error",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False

        if not sent:
            self.store.clear_reset_token(user.id)
            logger.error("password_reset_rolled_back", user_id=user.id)
            raise EmailDeliveryError("unable to send password reset email")

        logger.info("password_reset_requested", user_id=user.id, email_hash=email_hash)

    async def complete_reset(self, token: str, new_password: str) -> User:
        password_hash = self.auth.hash_password(new_password)
        user = self.store.consume_reset_token(
            hash_reset_token(token),
            password_hash,
            self.clock(),
            revoke_sessions=self.settings.reset_revokes_sessions,
        )
        if not user:
            logger.warning("password_reset_token_rejected")
            raise InvalidOrExpiredTokenError()
        logger.info(
            "password_reset_completed",
            user_id=user.id,
            sessions_revoked=self.settings.reset_revokes_sessions,
        )
        return user.sanitized()
