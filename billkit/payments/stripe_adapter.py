# billkit/payments/stripe_adapter.py
"""
Payment Adapter - Stripe Checkout for the first payment, off-session
PaymentIntents for renewals and upgrades, Refunds, and webhook confirmation.

Checkout runs in one-time payment mode and saves the card for off-session
use; the renewal processor decides when to bill, so Stripe never runs a
recurring schedule of its own.
"""
import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from ..core.config import settings
from ..core.exceptions import PreconditionError
from ..schemas.payments import (
    ChargeParams,
    ChargeResult,
    ConfirmResult,
    PaymentParams,
    PaymentResult,
    RefundParams,
    RefundResult,
)
from .base import Capability, PaymentAdapter

logger = logging.getLogger(__name__)

SUBSCRIPTION_METADATA_KEY = "billkit_subscription_id"
CUSTOMER_METADATA_KEY = "billkit_customer_id"

# Stripe only accepts these refund reasons; anything else goes to metadata
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

CHECKOUT_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)


def _error_message(e: stripe.StripeError) -> str:
    return e.user_message or str(e)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class StripePaymentAdapter(PaymentAdapter):
    id = "stripe"
    capabilities = frozenset({Capability.CHARGE, Capability.REFUND, Capability.CONFIRM})

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    async def _call(self, fn, **kwargs) -> Any:
        # stripe-python is synchronous; keep the event loop free
        return await asyncio.to_thread(fn, api_key=self.secret_key, **kwargs)

    async def _ensure_customer(self, params: PaymentParams) -> str:
        if params.customer.provider_customer_id:
            return params.customer.provider_customer_id

        customer = await self._call(
            stripe.Customer.create,
            email=params.customer.email,
            metadata={CUSTOMER_METADATA_KEY: params.customer.id},
        )
        return customer.id

    async def process_payment(self, params: PaymentParams) -> PaymentResult:
        """Create a Checkout Session; the subscription activates from the webhook"""
        if not params.success_url or not params.cancel_url:
            return PaymentResult(
                status="failed",
                error="success_url and cancel_url are required for Stripe payments",
            )

        metadata = {
            **{k: str(v) for k, v in params.metadata.items()},
            SUBSCRIPTION_METADATA_KEY: params.subscription_id,
            CUSTOMER_METADATA_KEY: params.customer.id,
        }

        try:
            stripe_customer_id = await self._ensure_customer(params)
            session = await self._call(
                stripe.checkout.Session.create,
                mode="payment",
                customer=stripe_customer_id,
                line_items=[{
                    "price_data": {
                        "currency": params.price.currency,
                        "unit_amount": params.price.amount,
                        "product_data": {"name": params.plan.name},
                    },
                    "quantity": 1,
                }],
                success_url=params.success_url,
                cancel_url=params.cancel_url,
                metadata=metadata,
                payment_intent_data={"setup_future_usage": "off_session", "metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe checkout failed for subscription {params.subscription_id}: {e}")
            return PaymentResult(status="failed", error=_error_message(e))

        return PaymentResult(
            status="pending",
            session_id=session.id,
            redirect_url=session.url,
            provider_customer_id=stripe_customer_id,
        )

    async def _saved_payment_method(self, stripe_customer_id: str) -> Optional[str]:
        customer = await self._call(stripe.Customer.retrieve, id=stripe_customer_id)
        invoice_settings = customer.get("invoice_settings") or {}
        if invoice_settings.get("default_payment_method"):
            return invoice_settings["default_payment_method"]

        # Cards saved by checkout are attached but not made the default
        methods = await self._call(stripe.PaymentMethod.list, customer=stripe_customer_id, type="card", limit=1)
        return methods.data[0].id if methods.data else None

    async def charge(self, params: ChargeParams) -> ChargeResult:
        """Charge the customer's default payment method off-session"""
        try:
            payment_method = await self._saved_payment_method(params.customer.provider_customer_id)
            if not payment_method:
                return ChargeResult(status="failed", error="Customer has no saved payment method")

            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=params.amount,
                currency=params.currency,
                customer=params.customer.provider_customer_id,
                payment_method=payment_method,
                off_session=True,
                confirm=True,
                description=params.description,
                metadata={k: str(v) for k, v in params.metadata.items()},
                idempotency_key=params.idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe charge failed for customer {params.customer.id}: {e}")
            return ChargeResult(status="failed", error=_error_message(e))

        if intent.status != "succeeded":
            return ChargeResult(
                status="failed",
                provider_payment_id=intent.id,
                error=f"Payment intent status: {intent.status}",
            )
        return ChargeResult(status="success", provider_payment_id=intent.id)

    async def refund(self, params: RefundParams) -> RefundResult:
        kwargs: Dict[str, Any] = {"payment_intent": params.provider_payment_id}
        if params.amount is not None:
            kwargs["amount"] = params.amount
        if params.reason in STRIPE_REFUND_REASONS:
            kwargs["reason"] = params.reason
        elif params.reason:
            kwargs["metadata"] = {"reason": params.reason}

        try:
            refund = await self._call(stripe.Refund.create, **kwargs)
        except stripe.StripeError as e:
            logger.warning(f"Stripe refund failed for {params.provider_payment_id}: {e}")
            return RefundResult(status="failed", error=_error_message(e))

        if refund.status in ("failed", "canceled"):
            return RefundResult(status="failed", provider_refund_id=refund.id, error=f"Refund {refund.status}")
        return RefundResult(status="refunded", provider_refund_id=refund.id)

    async def confirm_payment(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ConfirmResult]:
        """Handle Stripe webhook events"""
        signature = _header(headers, "stripe-signature")
        if not signature:
            raise PreconditionError("Missing stripe-signature header", "INVALID_WEBHOOK")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise PreconditionError(f"Webhook signature verification failed: {e}", "INVALID_WEBHOOK")

        event_type = event["type"]
        data = event["data"]["object"]

        if event_type not in CHECKOUT_EVENTS:
            logger.debug(f"Ignoring Stripe event {event_type}")
            return None

        subscription_id = (data.get("metadata") or {}).get(SUBSCRIPTION_METADATA_KEY)
        if not subscription_id:
            logger.warning(f"Checkout session {data.get('id')} has no billkit subscription id")
            return None

        # Delayed payment methods complete the session before the money arrives
        if event_type == "checkout.session.completed" and data.get("payment_status") == "unpaid":
            logger.info(f"Checkout session {data.get('id')} completed, payment still processing")
            return None

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return ConfirmResult(
                subscription_id=subscription_id,
                status="active",
                provider_customer_id=data.get("customer"),
                provider_payment_id=data.get("payment_intent"),
            )

        return ConfirmResult(
            subscription_id=subscription_id,
            status="failed",
            provider_customer_id=data.get("customer"),
            error="Checkout expired" if event_type == "checkout.session.expired" else "Checkout payment failed",
        )
