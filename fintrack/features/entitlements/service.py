"""
fintrack/features/entitlements/service.py

Entitlement Record persistence.

Handles:
- Record creation with the default grant at sign-up
- Point lookups (by user id, by CPF) and listing
- Atomic grant writes: every change to duration/anchor/approval bumps
  `revision` in the same UPDATE, so readers never see a half-applied grant
- User deletion (record + credentials + application data in one transaction)
- Admin audit trail
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import SQLAlchemyError

from fintrack.core.config import settings
from fintrack.core.database import (
    get_db_session,
    ensure_utc,
    user_entitlements,
    user_credentials,
    user_data,
    admin_audit,
)
from fintrack.core.errors import AdminAuditWriteError, ProfileNotFoundError, ValidationError
from fintrack.models.entitlement import EntitlementRecord, UserProfile, SECONDS_PER_DAY


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """Admin action to record in the same transaction as the write it describes."""

    actor: str
    action: str
    payload: dict = field(default_factory=dict)


def _audit_write(session, user_id: str, audit: Optional[AuditEntry], **result) -> None:
    if audit is None:
        return
    record_admin_audit(
        actor=audit.actor,
        action=audit.action,
        target_user_id=user_id,
        payload={**audit.payload, **result} or None,
        session=session,
    )


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _row_to_record(row) -> EntitlementRecord:
    profile = None
    if row.cpf or row.phone:
        profile = UserProfile(cpf=row.cpf or "", phone=row.phone or "")
    return EntitlementRecord(
        user_id=row.user_id,
        username=row.username,
        is_admin=bool(row.is_admin),
        is_approved=bool(row.is_approved),
        access_duration_seconds=row.access_duration_seconds,
        granted_at=ensure_utc(row.granted_at),
        profile=profile,
        revision=row.revision or 0,
    )


def _load(session, user_id: str, *, for_update: bool = False) -> EntitlementRecord:
    stmt = select(user_entitlements).where(user_entitlements.c.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    if not row:
        raise ProfileNotFoundError(f"No entitlement record for user {user_id}")
    return _row_to_record(row)


def _write(session, user_id: str, **values) -> EntitlementRecord:
    result = session.execute(
        update(user_entitlements)
        .where(user_entitlements.c.user_id == user_id)
        .values(
            revision=user_entitlements.c.revision + 1,
            updated_at=datetime.now(timezone.utc),
            **values,
        )
    )
    if result.rowcount == 0:
        raise ProfileNotFoundError(f"No entitlement record for user {user_id}")
    return _load(session, user_id)


def create_entitlement(
    user_id: str,
    *,
    username: Optional[str] = None,
    profile: Optional[UserProfile] = None,
    is_admin: bool = False,
    is_approved: bool = False,
    grant_days: Optional[int] = None,
    now: Optional[datetime] = None,
    session=None,
) -> EntitlementRecord:
    """Create the record with the default grant (ACCESS_DEFAULT_GRANT_DAYS from now)."""
    days = settings.ACCESS_DEFAULT_GRANT_DAYS if grant_days is None else grant_days
    values = dict(
        user_id=user_id,
        username=username,
        is_admin=is_admin,
        is_approved=is_approved,
        access_duration_seconds=None if is_admin else max(0, days) * SECONDS_PER_DAY,
        granted_at=_normalize_now(now),
        cpf=UserProfile.normalized_cpf(profile.cpf) if profile else None,
        phone=profile.phone if profile else None,
        revision=1,
    )
    if session is not None:
        session.execute(insert(user_entitlements).values(**values))
        return _load(session, user_id)
    with get_db_session() as own_session:
        own_session.execute(insert(user_entitlements).values(**values))
        return _load(own_session, user_id)


def get_entitlement(user_id: str) -> EntitlementRecord:
    """Raises ProfileNotFoundError when the user has no record."""
    with get_db_session() as session:
        return _load(session, user_id)


def find_by_cpf(cpf: str) -> Optional[EntitlementRecord]:
    digits = UserProfile.normalized_cpf(cpf)
    if not digits:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(user_entitlements).where(user_entitlements.c.cpf == digits)
        ).first()
        return _row_to_record(row) if row else None


def list_entitlements() -> List[EntitlementRecord]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_entitlements).order_by(user_entitlements.c.created_at, user_entitlements.c.user_id)
        ).fetchall()
        return [_row_to_record(row) for row in rows]


def write_duration(
    user_id: str, seconds: int, granted_at: datetime, audit: Optional[AuditEntry] = None
) -> EntitlementRecord:
    """Overwrite both duration and anchor in a single statement."""
    if granted_at is None:
        raise ValidationError("granted_at is required when setting an absolute duration")
    with get_db_session() as session:
        record = _write(
            session,
            user_id,
            access_duration_seconds=max(0, int(seconds)),
            granted_at=_normalize_now(granted_at),
        )
        _audit_write(session, user_id, audit, seconds=record.access_duration_seconds)
    logger.info(
        "[entitlements] duration set",
        extra={"user_id": user_id, "seconds": record.access_duration_seconds, "revision": record.revision},
    )
    return record


def adjust_duration(user_id: str, delta_seconds: int, audit: Optional[AuditEntry] = None) -> EntitlementRecord:
    """Add to or subtract from the duration; the anchor never moves.

    The result is clamped at zero. A zero delta is a no-op (no write, no new revision).
    """
    delta = int(delta_seconds)
    with get_db_session() as session:
        current = _load(session, user_id, for_update=True)
        if delta == 0:
            return current
        base = current.access_duration_seconds or 0
        new_seconds = max(0, base + delta)
        values = {"access_duration_seconds": new_seconds}
        if current.granted_at is None:
            # A window needs an anchor to count from
            values["granted_at"] = datetime.now(timezone.utc)
        record = _write(session, user_id, **values)
        _audit_write(session, user_id, audit, delta_seconds=delta, seconds=record.access_duration_seconds)
    logger.info(
        "[entitlements] duration adjusted",
        extra={
            "user_id": user_id,
            "delta_seconds": delta,
            "seconds": record.access_duration_seconds,
            "clamped": base + delta < 0,
            "revision": record.revision,
        },
    )
    return record


def set_approval(user_id: str, approved: bool, audit: Optional[AuditEntry] = None) -> EntitlementRecord:
    with get_db_session() as session:
        record = _write(session, user_id, is_approved=bool(approved))
        _audit_write(session, user_id, audit)
    logger.info("[entitlements] approval changed", extra={"user_id": user_id, "approved": bool(approved)})
    return record


def update_profile(user_id: str, profile: UserProfile) -> EntitlementRecord:
    with get_db_session() as session:
        return _write(
            session,
            user_id,
            cpf=UserProfile.normalized_cpf(profile.cpf),
            phone=profile.phone,
        )


def load_for_update(session, user_id: str) -> EntitlementRecord:
    """Row-locked read inside the caller's transaction."""
    return _load(session, user_id, for_update=True)


def apply_extension(session, user_id: str, *, new_expiration: datetime, now: datetime) -> EntitlementRecord:
    """Move the end of the grant window to `new_expiration` inside the caller's transaction.

    Keeps the existing anchor when there is one so the window stays continuous;
    otherwise the window starts now.
    """
    current = _load(session, user_id, for_update=True)
    anchor = current.granted_at or now
    seconds = max(0, int((new_expiration - anchor) // timedelta(seconds=1)))
    return _write(session, user_id, access_duration_seconds=seconds, granted_at=anchor)


def delete_user(user_id: str, audit: Optional[AuditEntry] = None) -> int:
    """Remove the record and all application data. Returns the last revision seen."""
    with get_db_session() as session:
        current = _load(session, user_id, for_update=True)
        session.execute(delete(user_data).where(user_data.c.user_id == user_id))
        session.execute(delete(user_credentials).where(user_credentials.c.user_id == user_id))
        session.execute(delete(user_entitlements).where(user_entitlements.c.user_id == user_id))
        _audit_write(session, user_id, audit)
    logger.warning("[entitlements] user deleted", extra={"user_id": user_id})
    return current.revision


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    payload: Optional[dict] = None,
    *,
    session=None,
) -> None:
    """
    Record an admin action in the audit log.

    With `session` the row joins the caller's transaction, so a failed insert
    rolls the audited change back too.

    Args:
        actor: Admin identity (e.g. "admin_key" or the admin username)
        action: Action name (e.g. "adjust_duration", "delete_user")
        target_user_id: User affected by action (optional)
        payload: Additional context as dict (will be JSON-serialized)
        session: Open transaction to write in (optional)
    """
    if session is None:
        with get_db_session() as own_session:
            record_admin_audit(actor, action, target_user_id, payload, session=own_session)
        return

    payload_json = json.dumps(payload, default=str) if payload else None
    try:
        session.execute(
            insert(admin_audit).values(
                actor=actor,
                action=action,
                target_user_id=target_user_id,
                payload_json=payload_json,
            )
        )
    except SQLAlchemyError as exc:
        logger.error(
            "[audit] admin audit write failed",
            extra={"actor": actor, "event_type": action, "user_id": target_user_id},
            exc_info=True,
        )
        raise AdminAuditWriteError(f"Failed to record admin action {action}") from exc
