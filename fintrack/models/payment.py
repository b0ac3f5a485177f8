"""
fintrack/models/payment.py

Payment notification payloads as delivered by the checkout provider's webhook,
plus the result returned to the caller.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PaymentSale(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    status: str
    total: Optional[float] = None
    amount: Optional[float] = None
    paid_at: Optional[str] = None
    method: Optional[str] = None


class PaymentClient(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    document: str
    cellphone: Optional[str] = None


class PaymentProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: Optional[str] = None
    amount: Optional[float] = None


class PaymentNotification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    event: Optional[str] = None
    oldStatus: Optional[str] = None
    currentStatus: Optional[str] = None
    sale: PaymentSale
    client: PaymentClient
    product: PaymentProduct


class PaymentResult(BaseModel):
    status: str  # applied | ignored | duplicate
    message: str
    user_id: Optional[str] = None
    subscription_days: Optional[int] = None
    expires_at: Optional[datetime] = None
