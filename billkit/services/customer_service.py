# billkit/services/customer_service.py
"""Customers, their payment history, and feature access"""
import logging
from typing import Any, Dict, List, Optional

from ..core.context import BillingContext
from ..core.exceptions import customer_not_found, payment_not_found, plan_not_found
from ..schemas.billing import Customer, Payment, Plan, SubscriptionStatus
from ..schemas.results import CustomerResult, FeatureAccess, FeatureState

logger = logging.getLogger(__name__)

# A subscription that is past due or awaiting checkout grants nothing
FEATURE_GRANTING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


async def create_customer(
    ctx: BillingContext,
    external_id: str,
    email: str,
    name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CustomerResult:
    existing = await ctx.repository.find_customer_by_external_id(external_id)
    if existing is not None:
        return CustomerResult(customer=existing, created=False)

    customer = await ctx.repository.create_customer(
        external_id=external_id, email=email, name=name, metadata=metadata
    )
    logger.info(f"Created customer {customer.id} for {external_id}")
    return CustomerResult(customer=customer, created=True)


async def get_customer(ctx: BillingContext, external_id: str) -> Customer:
    customer = await ctx.repository.find_customer_by_external_id(external_id)
    if customer is None:
        raise customer_not_found(external_id)
    return customer


async def list_payments(
    ctx: BillingContext,
    customer_id: str,
    limit: int = 25,
    offset: int = 0,
) -> List[Payment]:
    customer = await get_customer(ctx, customer_id)
    return await ctx.repository.list_payments(customer.id, limit=limit, offset=offset)


async def get_payment(ctx: BillingContext, payment_id: str) -> Payment:
    payment = await ctx.repository.find_payment_by_id(payment_id)
    if payment is None:
        raise payment_not_found(payment_id)
    return payment


def list_plans(ctx: BillingContext, include_private: bool = False) -> List[Plan]:
    return ctx.repository.list_plans(include_private=include_private)


def get_plan(ctx: BillingContext, code: str) -> Plan:
    plan = ctx.repository.find_plan(code)
    if plan is None:
        raise plan_not_found(code)
    return plan


async def _granted_features(ctx: BillingContext, customer_id: str) -> List[str]:
    customer = await get_customer(ctx, customer_id)
    subscriptions = await ctx.repository.list_subscriptions(customer.id, FEATURE_GRANTING_STATUSES)
    if not subscriptions:
        return []
    return ctx.repository.get_plan_features(subscriptions[0].plan_code)


async def check_feature(ctx: BillingContext, customer_id: str, feature_code: str) -> FeatureAccess:
    return FeatureAccess(allowed=feature_code in await _granted_features(ctx, customer_id))


async def list_features(ctx: BillingContext, customer_id: str) -> List[FeatureState]:
    features = []
    for code in await _granted_features(ctx, customer_id):
        feature = ctx.repository.find_feature(code)
        if feature is None:
            logger.debug(f"Plan feature {code} has no catalogue entry")
            features.append(FeatureState(code=code, name=code))
            continue
        features.append(FeatureState(code=feature.code, name=feature.name, type=feature.type))
    return features
