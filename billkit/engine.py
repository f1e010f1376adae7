# billkit/engine.py
"""
BillingEngine - the object a host application holds on to.

Builds a BillingContext from BillingOptions plus the injected storage,
payment adapter, clock and lock, and exposes every billing operation as an
async method. State-changing operations run under the customer's lock.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .core.config import BillingOptions, load_plans, settings
from .core.context import BillingContext
from .core.database import create_engine, create_session_factory, get_redis
from .core.exceptions import PreconditionError, subscription_not_found
from .core.locks import CustomerLock, LocalCustomerLock, RedisCustomerLock
from .core.time import SystemTimeProvider, TimeProvider, utcnow
from .payments.base import Capability, PaymentAdapter
from .payments.mock import MockPaymentAdapter
from .payments.stripe_adapter import StripePaymentAdapter
from .schemas.billing import BillingInterval, CancelAt, Customer, Payment, Plan, Subscription
from .schemas.results import (
    CancelSubscriptionResult,
    ChangeSubscriptionResult,
    CreateRefundResult,
    CreateSubscriptionResult,
    CustomerResult,
    FeatureAccess,
    FeatureState,
    PaymentFailedResult,
    ProcessRenewalsResult,
    ProrationResult,
    SubscriptionView,
    TimeTravelState,
    TrialEndResult,
    WebhookResult,
)
from .services import (
    customer_service,
    payment_failed_service,
    refund_service,
    renewal_service,
    subscription_service,
    trial_service,
    webhook_service,
)
from .services.proration import calculate_proration
from .storage.base import StorageAdapter
from .storage.memory import MemoryStorageAdapter
from .storage.repository import BillingRepository
from .storage.sql import SQLAlchemyStorageAdapter
from .storage.time_travel import StoredTimeProvider

logger = logging.getLogger(__name__)


class BillingEngine:
    def __init__(self, ctx: BillingContext):
        self.ctx = ctx

    @property
    def repository(self) -> BillingRepository:
        return self.ctx.repository

    async def _customer_key(self, internal_customer_id: str) -> str:
        customer = await self.repository.find_customer_by_id(internal_customer_id)
        return customer.external_id if customer else internal_customer_id

    # Customers

    async def create_customer(
        self,
        external_id: str,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CustomerResult:
        async with self.ctx.lock.hold(external_id):
            return await customer_service.create_customer(self.ctx, external_id, email, name, metadata)

    async def get_customer(self, customer_id: str) -> Customer:
        return await customer_service.get_customer(self.ctx, customer_id)

    async def list_payments(self, customer_id: str, limit: int = 25, offset: int = 0) -> List[Payment]:
        return await customer_service.list_payments(self.ctx, customer_id, limit, offset)

    async def get_payment(self, payment_id: str) -> Payment:
        return await customer_service.get_payment(self.ctx, payment_id)

    # Plans and features

    def list_plans(self, include_private: bool = False) -> List[Plan]:
        return customer_service.list_plans(self.ctx, include_private)

    def get_plan(self, code: str) -> Plan:
        return customer_service.get_plan(self.ctx, code)

    async def check_feature(self, customer_id: str, feature_code: str) -> FeatureAccess:
        return await customer_service.check_feature(self.ctx, customer_id, feature_code)

    async def list_features(self, customer_id: str) -> List[FeatureState]:
        return await customer_service.list_features(self.ctx, customer_id)

    # Subscriptions

    async def get_subscription(self, customer_id: str) -> Optional[SubscriptionView]:
        return await subscription_service.get_subscription(self.ctx, customer_id)

    async def create_subscription(
        self,
        customer_id: str,
        plan_code: str,
        interval: BillingInterval = BillingInterval.MONTHLY,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreateSubscriptionResult:
        async with self.ctx.lock.hold(customer_id):
            return await subscription_service.create_subscription(
                self.ctx, customer_id, plan_code, interval, success_url, cancel_url, metadata
            )

    async def cancel_subscription(
        self,
        customer_id: str,
        cancel_at: CancelAt = CancelAt.PERIOD_END,
    ) -> CancelSubscriptionResult:
        async with self.ctx.lock.hold(customer_id):
            return await subscription_service.cancel_subscription(self.ctx, customer_id, cancel_at)

    async def resume_subscription(self, customer_id: str) -> Subscription:
        async with self.ctx.lock.hold(customer_id):
            return await subscription_service.resume_subscription(self.ctx, customer_id)

    async def change_subscription(
        self,
        customer_id: str,
        new_plan_code: str,
        new_interval: Optional[BillingInterval] = None,
        prorate: bool = True,
    ) -> ChangeSubscriptionResult:
        async with self.ctx.lock.hold(customer_id):
            return await subscription_service.change_subscription(
                self.ctx, customer_id, new_plan_code, new_interval, prorate
            )

    # Payments

    async def create_refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> CreateRefundResult:
        self.ctx.payment_adapter.require(Capability.REFUND)
        payment = await customer_service.get_payment(self.ctx, payment_id)
        async with self.ctx.lock.hold(await self._customer_key(payment.customer_id)):
            return await refund_service.create_refund(self.ctx, payment_id, amount, reason)

    async def handle_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookResult:
        return await webhook_service.handle_webhook(self.ctx, payload, headers)

    # Lifecycle events

    async def handle_trial_end(self, subscription_id: str) -> TrialEndResult:
        subscription = await self._subscription(subscription_id)
        async with self.ctx.lock.hold(await self._customer_key(subscription.customer_id)):
            return await trial_service.handle_trial_end(self.ctx, subscription_id)

    async def handle_payment_failed(self, subscription_id: str, error: Optional[str] = None) -> PaymentFailedResult:
        subscription = await self._subscription(subscription_id)
        async with self.ctx.lock.hold(await self._customer_key(subscription.customer_id)):
            return await payment_failed_service.handle_payment_failed(self.ctx, subscription_id, error)

    async def _subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.repository.find_subscription_by_id(subscription_id)
        if subscription is None:
            raise subscription_not_found(f"Subscription not found: {subscription_id}")
        return subscription

    # Batch entry points

    async def process_renewals(
        self,
        customer_id: Optional[str] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> ProcessRenewalsResult:
        return await renewal_service.process_renewals(self.ctx, customer_id, dry_run, limit)

    async def process_trial_ends(
        self,
        customer_id: Optional[str] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> ProcessRenewalsResult:
        return await trial_service.process_trial_ends(self.ctx, customer_id, dry_run, limit)

    # Time travel

    @property
    def time_travel(self) -> StoredTimeProvider:
        if not isinstance(self.ctx.clock, StoredTimeProvider):
            raise PreconditionError("Time travel is not enabled", "TIME_TRAVEL_DISABLED")
        return self.ctx.clock

    async def get_time_travel(self, customer_id: Optional[str] = None) -> TimeTravelState:
        simulated = await self.time_travel.get_time(customer_id)
        return TimeTravelState(
            customer_id=customer_id,
            simulated_time=simulated,
            is_simulated=simulated is not None,
            real_time=utcnow(),
        )

    async def set_time_travel(self, when: Optional[datetime], customer_id: Optional[str] = None) -> TimeTravelState:
        await self.time_travel.set_time(when, customer_id)
        return await self.get_time_travel(customer_id)

    async def advance_time_travel(
        self,
        days: int = 0,
        hours: int = 0,
        months: int = 0,
        customer_id: Optional[str] = None,
    ) -> TimeTravelState:
        await self.time_travel.advance(days=days, hours=hours, months=months, customer_id=customer_id)
        return await self.get_time_travel(customer_id)

    async def reset_time_travel(self, customer_id: Optional[str] = None) -> TimeTravelState:
        await self.time_travel.clear(customer_id)
        return await self.get_time_travel(customer_id)

    # Helpers

    @staticmethod
    def calculate_proration(
        old_amount: int,
        new_amount: int,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
    ) -> ProrationResult:
        return calculate_proration(old_amount, new_amount, period_start, period_end, change_date)


def create_billing(
    options: Optional[BillingOptions] = None,
    storage: Optional[StorageAdapter] = None,
    payment_adapter: Optional[PaymentAdapter] = None,
    clock: Optional[TimeProvider] = None,
    lock: Optional[CustomerLock] = None,
) -> BillingEngine:
    """
    Wire up a BillingEngine.

    Without arguments this gives an in-memory engine with the mock payment
    adapter and the wall clock, which is enough for development.
    """
    options = options or BillingOptions()
    clock = clock or SystemTimeProvider()

    repository = BillingRepository(
        storage or MemoryStorageAdapter(),
        plans=options.plans,
        features=options.features,
        clock=clock,
        default_currency=options.default_currency,
    )
    ctx = BillingContext(
        repository=repository,
        payment_adapter=payment_adapter or MockPaymentAdapter(),
        clock=clock,
        behaviors=options.behaviors,
        lock=lock or LocalCustomerLock(timeout=settings.LOCK_TIMEOUT_SECONDS),
    )
    return BillingEngine(ctx)


def create_billing_from_settings(
    options: Optional[BillingOptions] = None,
    db_engine: Optional[AsyncEngine] = None,
) -> BillingEngine:
    """
    Engine for long-running hosts and workers, wired from ``settings``:
    SQL storage at DATABASE_URL, Stripe when a secret key is set,
    Redis-backed customer locks when REDIS_URL is set and the stored
    time travel clock when TIME_TRAVEL is on.
    """
    if options is None:
        plans = load_plans(settings.PLANS_FILE) if settings.PLANS_FILE else []
        options = BillingOptions(plans=plans)

    storage = SQLAlchemyStorageAdapter(create_session_factory(db_engine or create_engine()))

    payment_adapter = None
    if settings.STRIPE_SECRET_KEY:
        payment_adapter = StripePaymentAdapter()

    lock = None
    redis_client = get_redis()
    if redis_client is not None:
        lock = RedisCustomerLock(redis_client, timeout=settings.LOCK_TIMEOUT_SECONDS)

    clock = None
    if settings.TIME_TRAVEL:
        clock = StoredTimeProvider(storage)
        logger.warning("Time travel enabled; do not use in production")

    return create_billing(options, storage=storage, payment_adapter=payment_adapter, clock=clock, lock=lock)
