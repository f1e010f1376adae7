# billkit/schemas/billing.py
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def rank(self) -> int:
        return _INTERVAL_RANK[self]


_INTERVAL_RANK = {
    BillingInterval.MONTHLY: 0,
    BillingInterval.QUARTERLY: 1,
    BillingInterval.YEARLY: 2,
}


class SubscriptionStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that count toward the one-live-subscription-per-customer rule
LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.PENDING_PAYMENT,
)


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    REFUND = "refund"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class CancelAt(str, enum.Enum):
    IMMEDIATELY = "immediately"
    PERIOD_END = "period_end"


class Price(BaseModel):
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str = Field("usd", description="ISO 4217 currency code")
    interval: BillingInterval
    trial_days: Optional[int] = None


class Plan(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    is_public: bool = True
    features: List[str] = Field(default_factory=list)
    prices: List[Price] = Field(default_factory=list)

    def price_for(self, interval: BillingInterval) -> Optional[Price]:
        for price in self.prices:
            if price.interval == interval:
                return price
        return None


class Feature(BaseModel):
    code: str
    name: str
    type: str = "boolean"


class Customer(BaseModel):
    id: str
    external_id: str
    email: str
    name: Optional[str] = None
    provider_customer_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class Subscription(BaseModel):
    id: str
    customer_id: str
    plan_code: str
    interval: BillingInterval
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    scheduled_plan_code: Optional[str] = None
    scheduled_interval: Optional[BillingInterval] = None
    provider_subscription_id: Optional[str] = None
    provider_checkout_session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class Payment(BaseModel):
    id: str
    customer_id: str
    subscription_id: Optional[str] = None
    type: PaymentType
    status: PaymentStatus
    amount: int = Field(..., description="Negative for refunds")
    currency: str = "usd"
    provider_payment_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, description="Charge attempts sharing a key are one charge")
    refunded_amount: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def refundable_amount(self) -> int:
        return self.amount - (self.refunded_amount or 0)
