"""
Auth provider protocol and the credential-backed implementation.

The session core only needs a stable user id on success and an AuthError
otherwise; it never sees password material.
"""
import hmac
import logging
import time
from typing import Callable, Optional, Protocol, Set
from uuid import uuid4

import bcrypt
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from fintrack.core.config import settings
from fintrack.core.database import get_db_session, user_credentials
from fintrack.core.errors import AuthError, ConflictError, ValidationError
from fintrack.core.rate_limit import FixedWindowLimiter

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class AuthProvider(Protocol):
    """
    Protocol for authentication providers.

    Implementations must:
    - return a stable user id from sign_up / sign_in
    - raise AuthError for bad credentials, unknown users and rate limiting
    """

    async def sign_up(self, username: str, password: str) -> str:
        ...

    async def sign_in(self, username: str, password: str) -> str:
        ...

    async def sign_out(self, user_id: str) -> None:
        ...

    def is_signed_in(self, user_id: str) -> bool:
        ...


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def verify_admin_credentials(username: str, password: str, settings_obj=None) -> bool:
    """Match the configured admin identity (constant-time); False when unconfigured."""
    cfg = settings_obj or settings
    expected_user = getattr(cfg, "ADMIN_USERNAME", None)
    expected_password = getattr(cfg, "ADMIN_PASSWORD", None)
    if not expected_user or not expected_password:
        return False
    user_ok = hmac.compare_digest((username or "").encode(), expected_user.encode())
    password_ok = hmac.compare_digest((password or "").encode(), expected_password.encode())
    return user_ok and password_ok


class CredentialAuthProvider:
    """Username/password provider over the user_credentials table."""

    def __init__(
        self,
        *,
        max_failed_attempts: Optional[int] = None,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        limit = max_failed_attempts or settings.AUTH_MAX_FAILED_ATTEMPTS_PER_MINUTE
        self._failures = FixedWindowLimiter(limit, time_fn or time.monotonic)
        self._active: Set[str] = set()

    async def sign_up(self, username: str, password: str) -> str:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must have at least {MIN_PASSWORD_LENGTH} characters")

        user_id = uuid4().hex
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(user_credentials.c.user_id).where(user_credentials.c.username == username)
                ).first()
                if existing:
                    raise ConflictError("Username already in use", code="username_taken")
                session.execute(
                    insert(user_credentials).values(
                        user_id=user_id,
                        username=username,
                        password_hash=hash_password(password),
                    )
                )
        except IntegrityError:
            # Concurrent sign-up with the same username
            raise ConflictError("Username already in use", code="username_taken")
        logger.info("[auth] user signed up", extra={"user_id": user_id})
        return user_id

    async def sign_in(self, username: str, password: str) -> str:
        key = (username or "").strip().lower()
        if self._failures.exhausted(key):
            raise AuthError(
                "Too many sign-in attempts. Please wait a few minutes and try again.",
                code="rate_limited",
            )

        with get_db_session() as session:
            row = session.execute(
                select(user_credentials).where(user_credentials.c.username == (username or "").strip())
            ).first()

        if not row or not check_password(password or "", row.password_hash):
            self._failures.allow(key)
            logger.warning("[auth] sign-in rejected", extra={"reason": "invalid_credentials"})
            raise AuthError("Invalid username or password", code="invalid_credentials")

        self._failures.reset(key)
        self._active.add(row.user_id)
        return row.user_id

    async def sign_out(self, user_id: str) -> None:
        self._active.discard(user_id)

    def is_signed_in(self, user_id: str) -> bool:
        return user_id in self._active


# Process-wide provider instance
auth_provider = CredentialAuthProvider()
