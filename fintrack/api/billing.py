"""
Billing API: renewal plan catalog and the payment notification webhook.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from fintrack.core.config import settings
from fintrack.core.errors import AuthError
from fintrack.features.billing.payments import process_payment_notification
from fintrack.features.session.registry import SessionRegistry, get_session_registry
from fintrack.features.session.renewal import renewal_plans
from fintrack.models.payment import PaymentNotification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/plans")
def list_plans():
    return {
        "plans": [
            {
                "id": plan.plan_id,
                "name": plan.name,
                "days": plan.days,
                "monthly_price": plan.monthly_price,
                "full_price": plan.full_price,
                "link": plan.link,
            }
            for plan in renewal_plans()
        ]
    }


@router.post("/webhook")
async def payment_webhook(
    notification: PaymentNotification,
    x_webhook_token: Optional[str] = Header(None),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Apply a checkout notification. Replays of a recorded payment are no-ops."""
    expected = settings.PAYMENT_WEBHOOK_TOKEN
    if expected and not hmac.compare_digest((x_webhook_token or "").encode(), expected.encode()):
        logger.warning("[billing] webhook token mismatch")
        raise AuthError("Invalid webhook token", code="webhook_unauthorized")

    result = await process_payment_notification(notification, registry.store)
    return result.model_dump(mode="json")
