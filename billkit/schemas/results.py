# billkit/schemas/results.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .billing import Customer, Payment, Plan, Price, Subscription


class ProrationResult(BaseModel):
    credit: int = Field(..., description="Unused value of the old plan")
    charge: int = Field(..., description="Prorated value of the new plan")
    net_amount: int = Field(..., description="charge - credit")
    days_remaining: int
    total_days: int


class CreateSubscriptionResult(BaseModel):
    subscription: Subscription
    redirect_url: Optional[str] = None
    payment: Optional[Payment] = None


class CancelSubscriptionResult(BaseModel):
    subscription: Subscription
    canceled_immediately: bool
    access_until: Optional[datetime] = None


class ChangeSubscriptionResult(BaseModel):
    subscription: Subscription
    previous_plan: Optional[Plan] = None
    new_plan: Plan
    change_type: Literal["upgrade", "downgrade"]
    proration: Optional[ProrationResult] = None
    payment: Optional[Payment] = None
    scheduled: bool = False


class SubscriptionView(BaseModel):
    subscription: Subscription
    plan: Optional[Plan] = None
    price: Optional[Price] = None


class PlanChange(BaseModel):
    from_plan: str
    to_plan: str


class RenewalDetail(BaseModel):
    subscription_id: str
    customer_id: str
    status: Literal["succeeded", "failed", "skipped"]
    amount: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    plan_changed: Optional[PlanChange] = None


class ProcessRenewalsResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    renewals: List[RenewalDetail] = Field(default_factory=list)

    def record(self, detail: RenewalDetail) -> None:
        self.processed += 1
        self.renewals.append(detail)
        if detail.status == "succeeded":
            self.succeeded += 1
        elif detail.status == "failed":
            self.failed += 1
        else:
            self.skipped += 1


class CreateRefundResult(BaseModel):
    refund: Payment
    original_payment: Payment


class TrialEndResult(BaseModel):
    subscription: Subscription
    converted: bool


class PaymentFailedResult(BaseModel):
    subscription: Subscription


class FeatureAccess(BaseModel):
    allowed: bool


class FeatureState(BaseModel):
    code: str
    name: str
    type: str = "boolean"
    enabled: bool = True


class WebhookResult(BaseModel):
    received: bool = True
    subscription_id: Optional[str] = None
    status: Optional[str] = None


class CustomerResult(BaseModel):
    customer: Customer
    created: bool


class TimeTravelState(BaseModel):
    customer_id: Optional[str] = None
    simulated_time: Optional[datetime] = None
    is_simulated: bool = False
    real_time: datetime
