"""
User domain service.
- register_user(username, password, profile)
- access_status(record, now)
- list_user_overview(now) / user_stats(records, now)
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import insert

from fintrack.core.database import get_db_session, user_data
from fintrack.core.errors import ValidationError
from fintrack.features.auth.provider import AuthProvider
from fintrack.features.entitlements import service as entitlements
from fintrack.features.entitlements.duration import display_days_remaining, expiration_of, is_expired, status_tier
from fintrack.models.entitlement import EntitlementRecord, UserProfile

logger = logging.getLogger(__name__)

EMPTY_USER_DATA = {"transactions": [], "categories": []}


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


async def register_user(
    auth: AuthProvider,
    username: str,
    password: str,
    profile: Optional[UserProfile] = None,
    *,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """Create credentials, the default access grant and an empty data document."""
    if profile is not None and not UserProfile.normalized_cpf(profile.cpf):
        raise ValidationError("cpf must contain digits")

    user_id = await auth.sign_up(username, password)
    with get_db_session() as session:
        record = entitlements.create_entitlement(
            user_id,
            username=username.strip(),
            profile=profile,
            now=_normalize_now(now),
            session=session,
        )
        session.execute(insert(user_data).values(user_id=user_id, payload=dict(EMPTY_USER_DATA)))
    logger.info(
        "[users] registered",
        extra={"user_id": user_id, "seconds": record.access_duration_seconds},
    )
    return record


def access_status(record: EntitlementRecord, now: Optional[datetime] = None) -> Dict[str, object]:
    """Admin-facing access label and tier for one record."""
    current = _normalize_now(now)
    if record.is_admin or record.is_approved:
        return {"text": "Permanent access", "tier": "ok", "days_remaining": None}
    expires_at = expiration_of(record)
    if expires_at is None:
        return {"text": "No access period", "tier": "none", "days_remaining": None}
    if expires_at <= current:
        return {"text": "Access expired", "tier": "expired", "days_remaining": 0}
    days = display_days_remaining(record.access_duration_seconds, record.granted_at, current)
    return {"text": f"{days} days remaining", "tier": status_tier(days), "days_remaining": days}


def user_stats(records: List[EntitlementRecord], now: Optional[datetime] = None) -> Dict[str, int]:
    current = _normalize_now(now)
    regular = [r for r in records if not r.is_admin]
    within_window = 0
    for record in regular:
        expires_at = expiration_of(record)
        if expires_at is not None and expires_at > current:
            within_window += 1
    return {
        "total": len(records),
        "approved": sum(1 for r in records if r.is_approved),
        "pending": sum(1 for r in records if not r.is_approved),
        "within_window": within_window,
        "expired": sum(1 for r in regular if is_expired(r, current)),
    }


def list_user_overview(now: Optional[datetime] = None) -> Dict[str, object]:
    current = _normalize_now(now)
    records = entitlements.list_entitlements()
    users = []
    for record in records:
        expires_at = expiration_of(record)
        users.append(
            {
                "user_id": record.user_id,
                "username": record.username,
                "is_admin": record.is_admin,
                "is_approved": record.is_approved,
                "access_duration_seconds": record.access_duration_seconds,
                "granted_at": record.granted_at,
                "expires_at": expires_at,
                "profile": record.profile.model_dump() if record.profile else None,
                "status": access_status(record, current),
            }
        )
    return {"users": users, "stats": user_stats(records, current)}
