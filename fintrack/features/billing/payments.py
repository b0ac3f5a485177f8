"""
Payment confirmation adapter.

Turns a checkout provider notification into an access extension:
1. Ignore anything that is not a paid sale
2. Map the product to purchased days
3. Match the customer by CPF against stored profiles
4. Skip if the payment was already recorded (idempotent)
5. Extend access from max(now, current expiration) and record the payment,
   both in one transaction
6. Publish the updated Entitlement Record to live sessions

A renewal never shortens remaining access.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from fintrack.core.database import ensure_utc, get_db_session, payments
from fintrack.core.errors import ProfileNotFoundError, ValidationError
from fintrack.features.entitlements import service
from fintrack.features.entitlements.duration import expiration_of
from fintrack.features.entitlements.store import SqlProfileStore, profile_store
from fintrack.models.entitlement import EntitlementRecord, UserProfile
from fintrack.models.payment import PaymentNotification, PaymentResult

logger = logging.getLogger(__name__)

# Checkout product id -> purchased days
PRODUCT_SUBSCRIPTION_DAYS: Dict[int, int] = {
    673: 30,
    672: 180,
    700: 365,
}

PAID_STATUS = "paid"


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def extended_expiration(record: EntitlementRecord, days: int, now: datetime) -> datetime:
    """New end of the grant window: the later of now and the current expiration, plus `days`."""
    current = expiration_of(record)
    base = now if current is None or current < now else current
    return base + timedelta(days=days)


def _recorded_result(row) -> PaymentResult:
    return PaymentResult(
        status="duplicate",
        message="Payment already processed",
        user_id=row.user_id,
        subscription_days=row.subscription_days,
        expires_at=ensure_utc(row.expires_at),
    )


async def process_payment_notification(
    payload: Union[PaymentNotification, Dict[str, Any]],
    store: Optional[SqlProfileStore] = None,
    now: Optional[datetime] = None,
) -> PaymentResult:
    store = store or profile_store
    notification = payload if isinstance(payload, PaymentNotification) else PaymentNotification.model_validate(payload)
    sale = notification.sale
    payment_id = str(sale.id)

    if (sale.status or "").lower() != PAID_STATUS:
        logger.info("[payments] ignored", extra={"payment_id": payment_id, "status": sale.status})
        return PaymentResult(status="ignored", message=f"Sale status '{sale.status}' does not grant access")

    days = PRODUCT_SUBSCRIPTION_DAYS.get(notification.product.id)
    if days is None:
        raise ValidationError(f"Unknown product {notification.product.id}", code="unknown_product")

    cpf = UserProfile.normalized_cpf(notification.client.document)
    if not cpf:
        raise ValidationError("Customer document is missing", code="missing_document")

    record = await store.find_by_cpf(cpf)
    if record is None:
        logger.warning("[payments] no profile for customer", extra={"payment_id": payment_id})
        raise ProfileNotFoundError("No user found for the customer document")

    current = _normalize_now(now)
    try:
        with get_db_session() as session:
            existing = session.execute(select(payments).where(payments.c.payment_id == payment_id)).first()
            if existing:
                return _recorded_result(existing)

            new_expiration = extended_expiration(service.load_for_update(session, record.user_id), days, current)
            updated = service.apply_extension(session, record.user_id, new_expiration=new_expiration, now=current)
            session.execute(
                insert(payments).values(
                    payment_id=payment_id,
                    user_id=record.user_id,
                    product_id=notification.product.id,
                    amount=sale.total if sale.total is not None else sale.amount,
                    status=sale.status,
                    payment_method=sale.method,
                    paid_at=sale.paid_at,
                    subscription_days=days,
                    expires_at=new_expiration,
                )
            )
    except IntegrityError:
        # Concurrent delivery of the same notification
        with get_db_session() as session:
            existing = session.execute(select(payments).where(payments.c.payment_id == payment_id)).first()
        if existing is None:
            raise
        return _recorded_result(existing)

    await store.publish(updated)
    logger.info(
        "[payments] access extended",
        extra={"user_id": record.user_id, "payment_id": payment_id, "days": days},
    )
    return PaymentResult(
        status="applied",
        message=f"Access extended by {days} days",
        user_id=record.user_id,
        subscription_days=days,
        expires_at=new_expiration,
    )
