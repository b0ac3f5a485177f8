"""
Auth & session API.

Sessions are identified by the opaque X-Session-Id header returned from
sign-in. GET /session runs one evaluation tick before answering, so clients
that cannot keep a poll task alive still see expiry and renewals.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from pydantic import BaseModel, Field

from fintrack.core.errors import AppError
from fintrack.features.session.controller import SessionController
from fintrack.features.session.registry import SessionRegistry, get_session_registry
from fintrack.features.users.service import register_user
from fintrack.models.entitlement import UserProfile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SignUpIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str
    cpf: Optional[str] = None
    phone: Optional[str] = None


class SignInIn(BaseModel):
    username: str
    password: str


def _session_payload(controller: SessionController, *, login_notice: Optional[str] = None) -> dict:
    payload = controller.snapshot().model_dump(mode="json")
    payload["session_id"] = controller.session_id
    payload["login_notice"] = login_notice
    return payload


async def _sign_in(
    registry: SessionRegistry,
    session_id: Optional[str],
    response: Response,
    *,
    admin: bool,
    data: SignInIn,
) -> dict:
    controller = registry.find(session_id)
    created = controller is None
    if created:
        await registry.prune()
        controller = registry.create()
    try:
        if admin:
            await controller.sign_in_admin(data.username, data.password)
        else:
            await controller.sign_in(data.username, data.password)
    except AppError:
        if created:
            await registry.discard(controller.session_id)
        raise
    response.headers["X-Session-Id"] = controller.session_id
    return _session_payload(controller)


@router.post("/sign-up", status_code=201)
async def sign_up(data: SignUpIn, registry: SessionRegistry = Depends(get_session_registry)):
    profile = UserProfile(cpf=data.cpf, phone=data.phone or "") if data.cpf else None
    record = await register_user(registry.auth, data.username, data.password, profile)
    return {
        "user_id": record.user_id,
        "username": record.username,
        "access_duration_seconds": record.access_duration_seconds,
        "granted_at": record.granted_at,
    }


@router.post("/sign-in")
async def sign_in(
    data: SignInIn,
    response: Response,
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return await _sign_in(registry, x_session_id, response, admin=False, data=data)


@router.post("/admin/sign-in")
async def admin_sign_in(
    data: SignInIn,
    response: Response,
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return await _sign_in(registry, x_session_id, response, admin=True, data=data)


@router.post("/sign-out")
async def sign_out(
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    controller = registry.get(x_session_id)
    await controller.sign_out()
    await registry.discard(controller.session_id)
    return {"ok": True}


@router.get("/session")
async def get_session(
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Evaluate the session now and return its snapshot.

    After a forced sign-out the snapshot is signed out and `login_notice`
    explains why (e.g. "expired"). That answer is the last one: the session
    is discarded and later calls with its id get 404.
    """
    controller = registry.get(x_session_id)
    await controller.evaluate()
    if controller.state.signed_in:
        return _session_payload(controller)
    payload = _session_payload(controller, login_notice=controller.pop_login_notice())
    await registry.discard(controller.session_id)
    return payload


@router.post("/renewal/dismiss")
async def dismiss_renewal(
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    controller = registry.get(x_session_id)
    controller.dismiss_renewal_prompt()
    return _session_payload(controller)


@router.post("/payment-confirmation/ack")
async def acknowledge_payment(
    x_session_id: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    controller = registry.get(x_session_id)
    confirmation = controller.consume_payment_confirmation()
    if confirmation is None:
        return {"confirmation": None}
    return {
        "confirmation": {
            "user_id": confirmation.user_id,
            "access_duration_seconds": confirmation.access_duration_seconds,
            "previous_duration_seconds": confirmation.previous_duration_seconds,
            "expires_at": confirmation.expires_at,
            "days_remaining": confirmation.days_remaining,
        }
    }
