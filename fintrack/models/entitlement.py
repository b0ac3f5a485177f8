"""
fintrack/models/entitlement.py

Entitlement Record: the persisted access grant for one user.

A record is never expired when `is_admin` or `is_approved` is set. Otherwise the
grant window runs from `granted_at` for `access_duration_seconds`; an absent
duration means no access, not unlimited access.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


SECONDS_PER_DAY = 24 * 60 * 60


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpf: str
    phone: str

    @staticmethod
    def normalized_cpf(value: Optional[str]) -> str:
        """Digits only, the form used to match payment notifications."""
        return "".join(ch for ch in (value or "") if ch.isdigit())


class EntitlementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: Optional[str] = None
    is_admin: bool = False
    is_approved: bool = False
    access_duration_seconds: Optional[int] = None
    granted_at: Optional[datetime] = None
    profile: Optional[UserProfile] = None
    revision: int = 0

    @field_validator("access_duration_seconds", mode="before")
    @classmethod
    def _clamp_duration(cls, value: Any) -> Optional[int]:
        # Corrupted admin input must never yield a negative window or a crash
        if value is None:
            return None
        try:
            seconds = int(value)
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(0, seconds)

    @field_validator("granted_at", mode="before")
    @classmethod
    def _parse_granted_at(cls, value: Any) -> Optional[datetime]:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def is_exempt(self) -> bool:
        """Admins and manually approved users never expire."""
        return self.is_admin or self.is_approved


@dataclass(frozen=True)
class ProfileChange:
    """Push notification emitted by the profile store after a committed write."""

    user_id: str
    record: Optional[EntitlementRecord]
    revision: int
    deleted: bool = False
