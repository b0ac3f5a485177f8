"""Test doubles shared by the session and API tests."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, Optional, Tuple

from fintrack.core.errors import AuthError, ConflictError, ProfileNotFoundError, StoreUnavailableError
from fintrack.features.entitlements.hub import ProfileHub
from fintrack.models.entitlement import EntitlementRecord, ProfileChange, SECONDS_PER_DAY

NOW = datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides):
    defaults = dict(
        ENV="test",
        ADMIN_USERNAME="admin",
        ADMIN_PASSWORD="admin-pass",
        ADMIN_KEY="admin-key",
        ACCESS_DEFAULT_GRANT_DAYS=30,
        ACCESS_WARNING_WINDOW_DAYS=3,
        ACCESS_POLL_INTERVAL_SECONDS=60.0,
        ACCESS_MAX_POLL_FAILURES=3,
        ACCESS_EXPIRED_SIGNOUT_GRACE_SECONDS=0,
        ACCESS_TIMEZONE="UTC",
        PAYMENT_LINK_30D="https://pay.example/30",
        PAYMENT_LINK_180D="https://pay.example/180",
        PAYMENT_LINK_365D="https://pay.example/365",
        SESSION_POLL_ENABLED=False,
        LOCAL_STATE_DIR=None,
        SESSION_IDLE_TTL_SECONDS=3600,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def make_record(
    user_id: str = "u1",
    *,
    days: Optional[int] = 30,
    granted_days_ago: float = 0,
    approved: bool = False,
    admin: bool = False,
    revision: int = 1,
    now: datetime = NOW,
) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=user_id,
        username=user_id,
        is_admin=admin,
        is_approved=approved,
        access_duration_seconds=None if days is None else days * SECONDS_PER_DAY,
        granted_at=now - timedelta(days=granted_days_ago),
        revision=revision,
    )


class FakeProfileStore:
    """In-memory profile store with failure injection."""

    def __init__(self, hub: Optional[ProfileHub] = None):
        self.hub = hub or ProfileHub()
        self.records: Dict[str, EntitlementRecord] = {}
        self.fail_next = 0
        self.calls = 0

    def put(self, record: EntitlementRecord) -> EntitlementRecord:
        previous = self.records.get(record.user_id)
        if previous is not None:
            record = record.model_copy(update={"revision": previous.revision + 1})
        self.records[record.user_id] = record
        return record

    async def get_entitlement(self, user_id: str) -> EntitlementRecord:
        self.calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise StoreUnavailableError("profile store unreachable")
        if user_id not in self.records:
            raise ProfileNotFoundError(f"No entitlement record for user {user_id}")
        return self.records[user_id]

    def subscribe(self, user_id, callback):
        return self.hub.subscribe(user_id, callback)

    async def push(self, record: EntitlementRecord) -> EntitlementRecord:
        stored = self.put(record)
        await self.hub.publish(ProfileChange(user_id=stored.user_id, record=stored, revision=stored.revision))
        return stored

    async def remove(self, user_id: str) -> None:
        record = self.records.pop(user_id)
        await self.hub.publish(
            ProfileChange(user_id=user_id, record=None, revision=record.revision + 1, deleted=True)
        )


class FakeAuthProvider:
    def __init__(self, users: Optional[Dict[str, Tuple[str, str]]] = None):
        # username -> (password, user_id)
        self.users = dict(users or {})
        self.active = set()
        self.signed_out = []

    async def sign_up(self, username: str, password: str) -> str:
        if username in self.users:
            raise ConflictError("Username already in use", code="username_taken")
        user_id = f"user-{len(self.users) + 1}"
        self.users[username] = (password, user_id)
        return user_id

    async def sign_in(self, username: str, password: str) -> str:
        entry = self.users.get(username)
        if entry is None or entry[0] != password:
            raise AuthError("Invalid username or password", code="invalid_credentials")
        self.active.add(entry[1])
        return entry[1]

    async def sign_out(self, user_id: str) -> None:
        self.active.discard(user_id)
        self.signed_out.append(user_id)

    def is_signed_in(self, user_id: str) -> bool:
        return user_id in self.active
