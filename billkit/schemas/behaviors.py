# billkit/schemas/behaviors.py
from typing import Optional

from pydantic import BaseModel, Field

from .billing import BillingInterval, CancelAt, Customer, Payment, Plan, Subscription


class OnRefundParams(BaseModel):
    payment: Payment = Field(..., description="Original payment, refund totals applied")
    refund: Payment = Field(..., description="Negative-amount refund row")
    subscription: Optional[Subscription] = None
    customer: Customer


class OnPaymentFailedParams(BaseModel):
    subscription: Subscription
    customer: Customer
    error: Optional[str] = None


class OnSubscriptionCancelParams(BaseModel):
    subscription: Subscription
    customer: Customer
    cancel_at: CancelAt = CancelAt.PERIOD_END


class OnTrialEndParams(BaseModel):
    subscription: Subscription
    customer: Customer
    plan: Optional[Plan] = None


class OnDowngradeParams(BaseModel):
    subscription: Subscription
    customer: Customer
    previous_plan: Optional[Plan] = None
    new_plan: Plan
    new_interval: BillingInterval
    credit_amount: int = 0
