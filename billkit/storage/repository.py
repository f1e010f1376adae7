# billkit/storage/repository.py
"""
Typed access to billing records.

Customers, subscriptions and payments live in the injected storage adapter;
plans and features come from static configuration and never change at
runtime.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.config import FeatureConfig, PlanConfig
from ..core.time import SystemTimeProvider, TimeProvider, ensure_aware
from ..schemas.billing import (
    LIVE_STATUSES,
    BillingInterval,
    Customer,
    Feature,
    Payment,
    PaymentStatus,
    PaymentType,
    Plan,
    Price,
    Subscription,
    SubscriptionStatus,
)
from .base import CUSTOMER, PAYMENT, SUBSCRIPTION, Record, SortBy, StorageAdapter, Where, eq

_CUSTOMER_DATES = ("created_at", "updated_at")
_SUBSCRIPTION_DATES = (
    "current_period_start", "current_period_end", "trial_start", "trial_end",
    "cancel_at", "canceled_at", "created_at", "updated_at",
)
_PAYMENT_DATES = ("created_at", "updated_at")


def _normalize(record: Record, date_fields: Iterable[str]) -> Record:
    record = dict(record)
    for field in date_fields:
        if field in record:
            record[field] = ensure_aware(record[field])
    if record.get("metadata") is None:
        record["metadata"] = {}
    return record


def plan_from_config(config: PlanConfig, default_currency: str = "usd") -> Plan:
    return Plan(
        code=config.code,
        name=config.name,
        description=config.description,
        is_public=config.is_public,
        features=list(config.features),
        prices=[
            Price(
                amount=p.amount,
                currency=p.currency or default_currency,
                interval=p.interval,
                trial_days=p.trial_days,
            )
            for p in config.prices
        ],
    )


class BillingRepository:
    def __init__(
        self,
        adapter: StorageAdapter,
        plans: Sequence[PlanConfig] = (),
        features: Sequence[FeatureConfig] = (),
        clock: Optional[TimeProvider] = None,
        default_currency: str = "usd",
    ):
        self.adapter = adapter
        self.clock = clock or SystemTimeProvider()
        self.default_currency = default_currency
        self._plans: Dict[str, Plan] = {p.code: plan_from_config(p, default_currency) for p in plans}
        self._features: Dict[str, Feature] = {
            f.code: Feature(code=f.code, name=f.name, type=f.type) for f in features
        }

    async def _stamp(self) -> datetime:
        return await self.clock.now()

    # Customers

    async def create_customer(
        self,
        external_id: str,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Customer:
        now = await self._stamp()
        record = await self.adapter.create(CUSTOMER, {
            "external_id": external_id,
            "email": email,
            "name": name,
            "provider_customer_id": None,
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        })
        return Customer(**_normalize(record, _CUSTOMER_DATES))

    async def find_customer_by_id(self, customer_id: str) -> Optional[Customer]:
        record = await self.adapter.find_one(CUSTOMER, [eq("id", customer_id)])
        return Customer(**_normalize(record, _CUSTOMER_DATES)) if record else None

    async def find_customer_by_external_id(self, external_id: str) -> Optional[Customer]:
        record = await self.adapter.find_one(CUSTOMER, [eq("external_id", external_id)])
        return Customer(**_normalize(record, _CUSTOMER_DATES)) if record else None

    async def update_customer(self, customer_id: str, **fields) -> Optional[Customer]:
        fields["updated_at"] = await self._stamp()
        record = await self.adapter.update(CUSTOMER, [eq("id", customer_id)], fields)
        return Customer(**_normalize(record, _CUSTOMER_DATES)) if record else None

    # Plans and features (static configuration)

    def find_plan(self, code: str) -> Optional[Plan]:
        return self._plans.get(code)

    def list_plans(self, include_private: bool = False) -> List[Plan]:
        plans = list(self._plans.values())
        if include_private:
            return plans
        return [p for p in plans if p.is_public]

    def get_plan_price(self, code: str, interval: BillingInterval) -> Optional[Price]:
        plan = self._plans.get(code)
        if plan is None:
            return None
        return plan.price_for(BillingInterval(interval))

    def find_feature(self, code: str) -> Optional[Feature]:
        return self._features.get(code)

    def list_features(self) -> List[Feature]:
        return list(self._features.values())

    def get_plan_features(self, code: str) -> List[str]:
        plan = self._plans.get(code)
        return list(plan.features) if plan else []

    # Subscriptions

    async def create_subscription(
        self,
        customer_id: str,
        plan_code: str,
        interval: BillingInterval,
        status: SubscriptionStatus,
        period_start: datetime,
        period_end: datetime,
        trial_start: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        record = await self.adapter.create(SUBSCRIPTION, {
            "customer_id": customer_id,
            "plan_code": plan_code,
            "interval": interval,
            "status": status,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "trial_start": trial_start,
            "trial_end": trial_end,
            "cancel_at": None,
            "canceled_at": None,
            "scheduled_plan_code": None,
            "scheduled_interval": None,
            "provider_subscription_id": None,
            "provider_checkout_session_id": None,
            "metadata": metadata or {},
            "created_at": period_start,
            "updated_at": period_start,
        })
        return Subscription(**_normalize(record, _SUBSCRIPTION_DATES))

    async def find_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        record = await self.adapter.find_one(SUBSCRIPTION, [eq("id", subscription_id)])
        return Subscription(**_normalize(record, _SUBSCRIPTION_DATES)) if record else None

    async def find_live_subscription(self, customer_id: str) -> Optional[Subscription]:
        """
        The customer's subscription in a status that counts as active.

        A checkout still waiting for payment only wins when nothing else is live.
        """
        live = await self.list_subscriptions(customer_id, LIVE_STATUSES)
        if not live:
            return None
        live.sort(key=lambda s: s.status == SubscriptionStatus.PENDING_PAYMENT)
        return live[0]

    async def find_subscription_by_session_id(self, session_id: str) -> Optional[Subscription]:
        record = await self.adapter.find_one(SUBSCRIPTION, [eq("provider_checkout_session_id", session_id)])
        return Subscription(**_normalize(record, _SUBSCRIPTION_DATES)) if record else None

    async def list_subscriptions(
        self,
        customer_id: str,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> List[Subscription]:
        where = [eq("customer_id", customer_id)]
        if statuses:
            where.append(Where("status", "in", list(statuses)))
        records = await self.adapter.find_many(SUBSCRIPTION, where, sort_by=SortBy("created_at", "desc"))
        return [Subscription(**_normalize(r, _SUBSCRIPTION_DATES)) for r in records]

    async def find_subscriptions_due(
        self,
        date_field: str,
        now: datetime,
        statuses: Sequence[SubscriptionStatus],
        customer_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Subscription]:
        where = [Where("status", "in", list(statuses)), Where(date_field, "lte", now)]
        if customer_id is not None:
            where.append(eq("customer_id", customer_id))
        records = await self.adapter.find_many(
            SUBSCRIPTION, where, sort_by=SortBy(date_field, "asc"), limit=limit
        )
        return [Subscription(**_normalize(r, _SUBSCRIPTION_DATES)) for r in records]

    async def update_subscription(self, subscription_id: str, **fields) -> Optional[Subscription]:
        fields["updated_at"] = await self._stamp()
        record = await self.adapter.update(SUBSCRIPTION, [eq("id", subscription_id)], fields)
        return Subscription(**_normalize(record, _SUBSCRIPTION_DATES)) if record else None

    # Payments

    async def create_payment(
        self,
        customer_id: str,
        type: PaymentType,
        amount: int,
        currency: Optional[str] = None,
        status: PaymentStatus = PaymentStatus.PENDING,
        subscription_id: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        now = await self._stamp()
        record = await self.adapter.create(PAYMENT, {
            "customer_id": customer_id,
            "subscription_id": subscription_id,
            "type": type,
            "status": status,
            "amount": amount,
            "currency": currency or self.default_currency,
            "provider_payment_id": provider_payment_id,
            "idempotency_key": idempotency_key,
            "refunded_amount": 0,
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        })
        return Payment(**_normalize(record, _PAYMENT_DATES))

    async def find_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        record = await self.adapter.find_one(PAYMENT, [eq("id", payment_id)])
        return Payment(**_normalize(record, _PAYMENT_DATES)) if record else None

    async def find_payment_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        record = await self.adapter.find_one(PAYMENT, [eq("provider_payment_id", provider_payment_id)])
        return Payment(**_normalize(record, _PAYMENT_DATES)) if record else None

    async def find_charge_attempt(self, idempotency_key: str) -> Optional[Payment]:
        """
        The attempt for this key that may have moved money: pending,
        succeeded or refunded. Declined attempts are ignored so the charge
        can be tried again.
        """
        record = await self.adapter.find_one(PAYMENT, [
            eq("idempotency_key", idempotency_key),
            Where("status", "in", [PaymentStatus.PENDING, PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED]),
        ])
        return Payment(**_normalize(record, _PAYMENT_DATES)) if record else None

    async def update_payment(self, payment_id: str, **fields) -> Optional[Payment]:
        fields["updated_at"] = await self._stamp()
        record = await self.adapter.update(PAYMENT, [eq("id", payment_id)], fields)
        return Payment(**_normalize(record, _PAYMENT_DATES)) if record else None

    async def list_payments(
        self,
        customer_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        subscription_id: Optional[str] = None,
    ) -> List[Payment]:
        where = [eq("customer_id", customer_id)]
        if subscription_id is not None:
            where.append(eq("subscription_id", subscription_id))
        records = await self.adapter.find_many(
            PAYMENT, where, sort_by=SortBy("created_at", "desc"), limit=limit, offset=offset
        )
        return [Payment(**_normalize(r, _PAYMENT_DATES)) for r in records]
