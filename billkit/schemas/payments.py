# billkit/schemas/payments.py
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .billing import Price


class PaymentCustomer(BaseModel):
    id: str
    email: str
    provider_customer_id: Optional[str] = None


class PaymentPlan(BaseModel):
    code: str
    name: str


class PaymentParams(BaseModel):
    customer: PaymentCustomer
    plan: PaymentPlan
    price: Price
    subscription_id: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    status: Literal["active", "pending", "failed"]
    session_id: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    error: Optional[str] = None


class ChargeParams(BaseModel):
    customer: PaymentCustomer
    amount: int = Field(..., gt=0)
    currency: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Repeating a charge with the same key must not move money twice
    idempotency_key: Optional[str] = None


class ChargeResult(BaseModel):
    status: Literal["success", "failed"]
    provider_payment_id: Optional[str] = None
    error: Optional[str] = None


class RefundParams(BaseModel):
    provider_payment_id: str
    amount: Optional[int] = None
    reason: Optional[str] = None


class RefundResult(BaseModel):
    status: Literal["refunded", "failed"]
    provider_refund_id: Optional[str] = None
    error: Optional[str] = None


class ConfirmResult(BaseModel):
    subscription_id: str
    status: Literal["active", "failed"]
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    error: Optional[str] = None
