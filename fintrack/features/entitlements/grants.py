"""
Admin grant editor.

Mutates another user's Entitlement Record on behalf of an administrator.
Two primitive operations underlie everything here:

- set_absolute_duration: overwrite duration and anchor together
- adjust_duration: change the duration only; the anchor never moves

Both land as a single UPDATE. Each action's admin audit row is written in the
same transaction, so an edit is never applied without its audit entry.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fintrack.core.errors import ValidationError
from fintrack.features.entitlements import service
from fintrack.features.entitlements.store import SqlProfileStore, profile_store
from fintrack.models.entitlement import EntitlementRecord, SECONDS_PER_DAY

logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _positive_days(days: int) -> int:
    if days is None or int(days) <= 0:
        raise ValidationError("days must be a positive integer")
    return int(days)


class GrantEditor:
    def __init__(self, store: Optional[SqlProfileStore] = None, *, actor: str = "admin"):
        self.store = store or profile_store
        self.actor = actor

    def _audit(self, action: str, **payload) -> service.AuditEntry:
        return service.AuditEntry(actor=self.actor, action=action, payload=payload)

    async def set_absolute_duration(
        self, user_id: str, seconds: int, granted_at: Optional[datetime] = None
    ) -> EntitlementRecord:
        anchor = _normalize_now(granted_at)
        audit = self._audit("set_absolute_duration", granted_at=anchor.isoformat())
        return await self.store.write_duration(user_id, seconds, anchor, audit)

    async def adjust_duration(self, user_id: str, delta_seconds: int) -> EntitlementRecord:
        return await self.store.adjust_duration(user_id, delta_seconds, self._audit("adjust_duration"))

    async def add_days(self, user_id: str, days: int) -> EntitlementRecord:
        return await self.adjust_duration(user_id, _positive_days(days) * SECONDS_PER_DAY)

    async def remove_days(self, user_id: str, days: int) -> EntitlementRecord:
        return await self.adjust_duration(user_id, -_positive_days(days) * SECONDS_PER_DAY)

    async def set_expiration_date(
        self, user_id: str, expires_at: datetime, now: Optional[datetime] = None
    ) -> EntitlementRecord:
        """Restart the window now so that it ends at `expires_at` (past dates yield zero)."""
        current = _normalize_now(now)
        target = _normalize_now(expires_at)
        seconds = max(0, (target - current) // timedelta(seconds=1))
        return await self.set_absolute_duration(user_id, seconds, current)

    async def approve(self, user_id: str) -> EntitlementRecord:
        return await self.store.set_approval(user_id, True, self._audit("approve"))

    async def disapprove(self, user_id: str) -> EntitlementRecord:
        return await self.store.set_approval(user_id, False, self._audit("disapprove"))

    async def delete_user(self, user_id: str) -> None:
        await self.store.delete_user(user_id, self._audit("delete_user"))
