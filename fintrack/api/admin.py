"""
Admin API: user overview and grant editing.

All endpoints require an admin (X-Admin-Key header or an admin session).
Writes go through the GrantEditor so live sessions receive the change.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fintrack.core.admin_auth import AdminActor, require_admin
from fintrack.features.entitlements.grants import GrantEditor
from fintrack.features.session.registry import SessionRegistry, get_session_registry
from fintrack.features.users.service import list_user_overview
from fintrack.models.entitlement import EntitlementRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class DaysIn(BaseModel):
    days: int = Field(..., gt=0)


class ExpirationIn(BaseModel):
    expires_at: datetime


class DurationIn(BaseModel):
    seconds: int
    granted_at: Optional[datetime] = None


def _editor(actor: AdminActor, registry: SessionRegistry) -> GrantEditor:
    return GrantEditor(registry.store, actor=actor.actor_id)


def _record_payload(record: EntitlementRecord) -> dict:
    return record.model_dump(mode="json")


@router.get("/users")
def list_users(actor: AdminActor = Depends(require_admin)):
    return list_user_overview()


@router.post("/users/{user_id}/approve")
async def approve_user(
    user_id: str,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return _record_payload(await _editor(actor, registry).approve(user_id))


@router.post("/users/{user_id}/disapprove")
async def disapprove_user(
    user_id: str,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return _record_payload(await _editor(actor, registry).disapprove(user_id))


@router.post("/users/{user_id}/days/add")
async def add_days(
    user_id: str,
    data: DaysIn,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return _record_payload(await _editor(actor, registry).add_days(user_id, data.days))


@router.post("/users/{user_id}/days/remove")
async def remove_days(
    user_id: str,
    data: DaysIn,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return _record_payload(await _editor(actor, registry).remove_days(user_id, data.days))


@router.post("/users/{user_id}/expiration")
async def set_expiration(
    user_id: str,
    data: ExpirationIn,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Restart the grant window now so that it ends at `expires_at`."""
    return _record_payload(await _editor(actor, registry).set_expiration_date(user_id, data.expires_at))


@router.put("/users/{user_id}/duration")
async def set_duration(
    user_id: str,
    data: DurationIn,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    record = await _editor(actor, registry).set_absolute_duration(user_id, data.seconds, data.granted_at)
    return _record_payload(record)


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    actor: AdminActor = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    await _editor(actor, registry).delete_user(user_id)
    logger.warning("[admin] user deleted", extra={"user_id": user_id, "actor": actor.actor_id})
    return {"ok": True, "user_id": user_id}
