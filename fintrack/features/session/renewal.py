"""
Renewal trigger and plan catalog.

The prompt is a pure function of session state; the daily debounce compares
calendar dates, not elapsed time, so a dismissal at 23:59 allows a new prompt
at 00:00.
"""
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from fintrack.core.config import settings
from fintrack.models.session import SessionState


@dataclass(frozen=True)
class RenewalPlan:
    plan_id: str
    name: str
    days: int
    monthly_price: float
    full_price: float
    link: str


def renewal_plans(settings_obj=None) -> List[RenewalPlan]:
    cfg = settings_obj or settings
    return [
        RenewalPlan("30days", "30 days of access", 30, 4.20, 49.90, cfg.PAYMENT_LINK_30D),
        RenewalPlan("180days", "180 days of access", 180, 21.00, 249.90, cfg.PAYMENT_LINK_180D),
        RenewalPlan("365days", "1 year of access", 365, 42.00, 499.90, cfg.PAYMENT_LINK_365D),
    ]


def plan_for_days(days: int, settings_obj=None) -> Optional[RenewalPlan]:
    for plan in renewal_plans(settings_obj):
        if plan.days == days:
            return plan
    return None


def should_prompt_renewal(state: SessionState) -> bool:
    return state is SessionState.WARNING_WINDOW


def in_warning_window(days_remaining: int, warning_days: int) -> bool:
    return days_remaining <= warning_days


def prompt_allowed_today(last_prompted: Optional[str], today: date) -> bool:
    """False when the prompt was already dismissed on this calendar date."""
    return last_prompted != today.isoformat()


# Default catalog bound to process settings
RENEWAL_PLANS = renewal_plans()
