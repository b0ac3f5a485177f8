"""
Profile store adapter.

Presents the Entitlement Records as a remote document store: async point
lookups and point updates keyed by user id, plus a change subscription.
Every committed write is followed by a ProfileChange push to subscribers.

Database-level connectivity failures surface as StoreUnavailableError so
callers can tell a transient outage from a missing profile.
"""
from datetime import datetime
from typing import Callable, List, Optional, Protocol, TypeVar

from sqlalchemy.exc import OperationalError, InterfaceError

from fintrack.core.errors import StoreUnavailableError
from fintrack.features.entitlements import service
from fintrack.features.entitlements.hub import ChangeCallback, ProfileHub, Subscription, profile_hub
from fintrack.models.entitlement import EntitlementRecord, ProfileChange, UserProfile

T = TypeVar("T")


class ProfileStore(Protocol):
    """
    Protocol for the profile store as seen by the session controller.

    Implementations must:
    - raise ProfileNotFoundError when the user explicitly does not exist
    - raise StoreUnavailableError on transient failures
    """

    async def get_entitlement(self, user_id: str) -> EntitlementRecord:
        ...

    def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription:
        ...


def _guard(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailableError(f"Profile store unavailable: {exc.__class__.__name__}") from exc


class SqlProfileStore:
    """ProfileStore backed by the user_entitlements table."""

    def __init__(self, hub: Optional[ProfileHub] = None):
        self.hub = hub or profile_hub

    # Reads ----------------------------------------------------------------
    async def get_entitlement(self, user_id: str) -> EntitlementRecord:
        return _guard(lambda: service.get_entitlement(user_id))

    async def find_by_cpf(self, cpf: str) -> Optional[EntitlementRecord]:
        return _guard(lambda: service.find_by_cpf(cpf))

    async def list_entitlements(self) -> List[EntitlementRecord]:
        return _guard(service.list_entitlements)

    def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription:
        return self.hub.subscribe(user_id, callback)

    # Writes ---------------------------------------------------------------
    async def publish(self, record: EntitlementRecord) -> EntitlementRecord:
        await self.hub.publish(ProfileChange(user_id=record.user_id, record=record, revision=record.revision))
        return record

    async def write_duration(
        self, user_id: str, seconds: int, granted_at: datetime, audit: Optional[service.AuditEntry] = None
    ) -> EntitlementRecord:
        record = _guard(lambda: service.write_duration(user_id, seconds, granted_at, audit))
        return await self.publish(record)

    async def adjust_duration(
        self, user_id: str, delta_seconds: int, audit: Optional[service.AuditEntry] = None
    ) -> EntitlementRecord:
        record = _guard(lambda: service.adjust_duration(user_id, delta_seconds, audit))
        if int(delta_seconds) == 0:
            # No-op adjustments are not re-published
            return record
        return await self.publish(record)

    async def set_approval(self, user_id: str, approved: bool, audit: Optional[service.AuditEntry] = None) -> EntitlementRecord:
        record = _guard(lambda: service.set_approval(user_id, approved, audit))
        return await self.publish(record)

    async def update_profile(self, user_id: str, profile: UserProfile) -> EntitlementRecord:
        record = _guard(lambda: service.update_profile(user_id, profile))
        return await self.publish(record)

    async def delete_user(self, user_id: str, audit: Optional[service.AuditEntry] = None) -> None:
        last_revision = _guard(lambda: service.delete_user(user_id, audit))
        await self.hub.publish(
            ProfileChange(user_id=user_id, record=None, revision=last_revision + 1, deleted=True)
        )


# Process-wide store bound to the global hub
profile_store = SqlProfileStore()
