from fastapi import APIRouter, Depends, HTTPException, Query, Request
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import logging

from ..dependencies import get_billing, http_error
from ...core.exceptions import BillingError
from ...engine import BillingEngine
from ...schemas.billing import BillingInterval, CancelAt

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])

class CustomerCreate(BaseModel):
    external_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class SubscriptionCreate(BaseModel):
    customer_id: str
    plan_code: str
    interval: BillingInterval = BillingInterval.MONTHLY
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class SubscriptionCancel(BaseModel):
    customer_id: str
    cancel_at: CancelAt = CancelAt.PERIOD_END

class SubscriptionChange(BaseModel):
    customer_id: str
    plan_code: str
    interval: Optional[BillingInterval] = None
    prorate: bool = True

class SubscriptionResume(BaseModel):
    customer_id: str

class RefundCreate(BaseModel):
    payment_id: str
    amount: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = None

class TimeTravelSet(BaseModel):
    date: Optional[datetime] = None  # None goes back to real time
    customer_id: Optional[str] = None

class TimeTravelAdvance(BaseModel):
    days: int = Field(0, ge=0)
    hours: int = Field(0, ge=0)
    months: int = Field(0, ge=0)
    customer_id: Optional[str] = None

class TimeTravelReset(BaseModel):
    customer_id: Optional[str] = None

@router.get("/health")
async def health_check():
    return {"status": "healthy"}

@router.post("/customers")
async def create_customer(
    customer_data: CustomerCreate,
    billing: BillingEngine = Depends(get_billing)
):
    """Create a billing customer, or return the existing one for this external id"""
    try:
        result = await billing.create_customer(
            external_id=customer_data.external_id,
            email=customer_data.email,
            name=customer_data.name,
            metadata=customer_data.metadata
        )
        return result

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Customer creation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to create customer")

@router.get("/customers/{customer_id}")
async def get_customer(
    customer_id: str,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return {"customer": await billing.get_customer(customer_id)}

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get customer: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve customer")

@router.get("/plans")
async def list_plans(
    include_private: bool = False,
    billing: BillingEngine = Depends(get_billing)
):
    """Get available plans"""
    return {"plans": billing.list_plans(include_private=include_private)}

@router.get("/plans/{code}")
async def get_plan(
    code: str,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return {"plan": billing.get_plan(code)}

    except BillingError as e:
        raise http_error(e)

@router.get("/subscriptions/{customer_id}")
async def get_subscription(
    customer_id: str,
    billing: BillingEngine = Depends(get_billing)
):
    """Get the customer's current subscription with its plan and price"""
    try:
        view = await billing.get_subscription(customer_id)
        if view is None:
            return {"subscription": None, "plan": None, "price": None}
        return view

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get subscription: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve subscription")

@router.post("/subscriptions")
async def create_subscription(
    subscription_data: SubscriptionCreate,
    billing: BillingEngine = Depends(get_billing)
):
    """Create new subscription"""
    try:
        return await billing.create_subscription(
            customer_id=subscription_data.customer_id,
            plan_code=subscription_data.plan_code,
            interval=subscription_data.interval,
            success_url=subscription_data.success_url,
            cancel_url=subscription_data.cancel_url
        )

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Subscription creation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to create subscription")

@router.post("/subscriptions/cancel")
async def cancel_subscription(
    cancel_data: SubscriptionCancel,
    billing: BillingEngine = Depends(get_billing)
):
    """Cancel subscription now or at the end of the current period"""
    try:
        return await billing.cancel_subscription(
            customer_id=cancel_data.customer_id,
            cancel_at=cancel_data.cancel_at
        )

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Subscription cancellation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to cancel subscription")

@router.post("/subscriptions/change")
async def change_subscription(
    change_data: SubscriptionChange,
    billing: BillingEngine = Depends(get_billing)
):
    """Change subscription plan"""
    try:
        return await billing.change_subscription(
            customer_id=change_data.customer_id,
            new_plan_code=change_data.plan_code,
            new_interval=change_data.interval,
            prorate=change_data.prorate
        )

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Plan change failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to change plan")

@router.post("/subscriptions/resume")
async def resume_subscription(
    resume_data: SubscriptionResume,
    billing: BillingEngine = Depends(get_billing)
):
    """Reactivate a subscription scheduled for cancellation"""
    try:
        return {"subscription": await billing.resume_subscription(resume_data.customer_id)}

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Subscription reactivation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to reactivate subscription")

@router.post("/refunds")
async def create_refund(
    refund_data: RefundCreate,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return await billing.create_refund(
            payment_id=refund_data.payment_id,
            amount=refund_data.amount,
            reason=refund_data.reason
        )

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Refund failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to create refund")

@router.get("/payments")
async def list_payments(
    customer_id: str,
    limit: int = Query(25, ge=1, le=100),
    offset: int = Query(0, ge=0),
    billing: BillingEngine = Depends(get_billing)
):
    """Get billing history"""
    try:
        return {"payments": await billing.list_payments(customer_id, limit=limit, offset=offset)}

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get billing history: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve billing history")

@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return {"payment": await billing.get_payment(payment_id)}

    except BillingError as e:
        raise http_error(e)

@router.get("/features")
async def list_features(
    customer_id: str,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return {"features": await billing.list_features(customer_id)}

    except BillingError as e:
        raise http_error(e)

@router.get("/features/check")
async def check_feature(
    customer_id: str,
    feature: str,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return await billing.check_feature(customer_id, feature)

    except BillingError as e:
        raise http_error(e)

@router.get("/renewals")
async def process_renewals(
    customer_id: Optional[str] = None,
    dry_run: bool = False,
    limit: Optional[int] = Query(None, ge=1),
    billing: BillingEngine = Depends(get_billing)
):
    """Run due renewals; meant for an external scheduler"""
    try:
        return await billing.process_renewals(customer_id=customer_id, dry_run=dry_run, limit=limit)

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Renewal run failed: {e}")
        raise HTTPException(status_code=500, detail="Renewal processing failed")

@router.get("/time-travel/get")
async def get_time_travel(
    customer_id: Optional[str] = None,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return await billing.get_time_travel(customer_id)

    except BillingError as e:
        raise http_error(e)

@router.post("/time-travel/set")
async def set_time_travel(
    time_data: TimeTravelSet,
    billing: BillingEngine = Depends(get_billing)
):
    """Pin the simulated clock, globally or for one customer"""
    try:
        return await billing.set_time_travel(time_data.date, customer_id=time_data.customer_id)

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to set simulated time: {e}")
        raise HTTPException(status_code=500, detail="Failed to set simulated time")

@router.post("/time-travel/advance")
async def advance_time_travel(
    advance_data: TimeTravelAdvance,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return await billing.advance_time_travel(
            days=advance_data.days,
            hours=advance_data.hours,
            months=advance_data.months,
            customer_id=advance_data.customer_id
        )

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to advance simulated time: {e}")
        raise HTTPException(status_code=500, detail="Failed to advance simulated time")

@router.post("/time-travel/reset")
async def reset_time_travel(
    reset_data: Optional[TimeTravelReset] = None,
    billing: BillingEngine = Depends(get_billing)
):
    try:
        return await billing.reset_time_travel(reset_data.customer_id if reset_data else None)

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to reset simulated time: {e}")
        raise HTTPException(status_code=500, detail="Failed to reset simulated time")

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    billing: BillingEngine = Depends(get_billing)
):
    """Handle payment provider webhooks"""
    try:
        payload = await request.body()
        return await billing.handle_webhook(payload, dict(request.headers))

    except BillingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")
