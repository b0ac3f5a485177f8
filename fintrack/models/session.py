from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel

from fintrack.models.entitlement import EntitlementRecord


class SessionState(str, Enum):
    SIGNED_OUT = "signed_out"
    ACTIVE = "active"
    WARNING_WINDOW = "warning_window"
    EXPIRED = "expired"

    @property
    def signed_in(self) -> bool:
        return self is not SessionState.SIGNED_OUT


class SignOutReason(str, Enum):
    USER = "user"
    EXPIRED = "expired"
    ACCOUNT_REMOVED = "account_removed"
    INTEGRITY = "integrity"


@dataclass(frozen=True)
class AdminPrincipal:
    """Admin pseudo-session: matched against configured credentials, never expires."""

    username: str
    kind: Literal["admin"] = "admin"


@dataclass(frozen=True)
class UserPrincipal:
    user_id: str
    entitlement: EntitlementRecord
    kind: Literal["user"] = "user"


Principal = Union[AdminPrincipal, UserPrincipal]


@dataclass(frozen=True)
class PaymentConfirmation:
    """One-time acknowledgment surfaced after a renewing change to the grant."""

    user_id: str
    access_duration_seconds: int
    previous_duration_seconds: Optional[int]
    expires_at: Optional[datetime]
    days_remaining: int


class TimeLeftView(BaseModel):
    days: int
    hours: int
    minutes: int
    display_days: int
    label: str
    tier: str


class SessionSnapshot(BaseModel):
    """Read-only view of a session, as served to UI surfaces."""

    state: SessionState
    principal: Optional[Literal["admin", "user"]] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    time_left: Optional[TimeLeftView] = None
    expires_at: Optional[datetime] = None
    should_prompt_renewal: bool = False
    payment_confirmation_pending: bool = False
    connection_degraded: bool = False
    sign_out_reason: Optional[SignOutReason] = None
