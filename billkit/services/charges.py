# billkit/services/charges.py
"""
Off-session charges that survive a crash between "money moved" and
"subscription updated".

The ledger row is written as pending before the adapter is called and
settled right after. The caller's key names the logical charge (one
renewal period, one upgrade); the row id is what the provider sees as its
idempotency key. A retry for the same logical charge therefore either
finds a settled row and skips the provider, or repeats the pending
attempt under the same provider key.
"""
import logging
from typing import Any, Dict, Optional

from ..core.context import BillingContext
from ..schemas.billing import Customer, Payment, PaymentStatus, PaymentType
from ..schemas.payments import ChargeParams, PaymentCustomer

logger = logging.getLogger(__name__)

SETTLED = (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)


def payment_customer(customer: Customer) -> PaymentCustomer:
    return PaymentCustomer(
        id=customer.id,
        email=customer.email,
        provider_customer_id=customer.provider_customer_id,
    )


def charge_key(payment_type: PaymentType, subscription_id: str, *parts: Any) -> str:
    return ":".join([payment_type.value, subscription_id, *(str(p) for p in parts)])


async def charge_once(
    ctx: BillingContext,
    customer: Customer,
    payment_type: PaymentType,
    amount: int,
    currency: str,
    idempotency_key: str,
    description: str,
    subscription_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Payment:
    """
    Charge ``amount`` unless this logical charge already went through.

    Returns the ledger row: succeeded (or refunded) when the money was
    taken, now or by an earlier attempt, failed when the adapter declined.
    The decline reason is kept in ``metadata["error"]``. Adapter exceptions
    propagate and leave the row pending for the next attempt.
    """
    repository = ctx.repository

    payment = await repository.find_charge_attempt(idempotency_key)
    if payment is not None and payment.status in SETTLED:
        logger.info(f"Charge {idempotency_key} already settled as payment {payment.id}, not charging again")
        return payment

    if payment is None:
        payment = await repository.create_payment(
            customer_id=customer.id,
            subscription_id=subscription_id,
            type=payment_type,
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    else:
        logger.warning(f"Repeating unsettled charge {idempotency_key} (payment {payment.id})")

    charge = await ctx.payment_adapter.charge(
        ChargeParams(
            customer=payment_customer(customer),
            amount=payment.amount,
            currency=payment.currency,
            description=description,
            metadata={
                **payment.metadata,
                "payment_id": payment.id,
                "subscription_id": subscription_id,
                "customer_id": customer.id,
                "type": payment_type.value,
            },
            idempotency_key=payment.id,
        )
    )

    if charge.status == "failed":
        error = charge.error or "Charge failed"
        return await repository.update_payment(
            payment.id,
            status=PaymentStatus.FAILED,
            provider_payment_id=charge.provider_payment_id,
            metadata={**payment.metadata, "error": error},
        )

    return await repository.update_payment(
        payment.id,
        status=PaymentStatus.SUCCEEDED,
        provider_payment_id=charge.provider_payment_id,
    )
