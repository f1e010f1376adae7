# billkit/core/exceptions.py
from typing import Optional


class BillingError(Exception):
    """Base class for every error the billing engine raises on purpose"""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class NotFoundError(BillingError):
    status_code = 404
    default_code = "NOT_FOUND"


class PreconditionError(BillingError):
    """Caller or configuration mistake; never retried"""

    status_code = 400
    default_code = "INVALID_REQUEST"


class ProviderError(BillingError):
    """The payment adapter reported a failed payment, charge or refund"""

    status_code = 402
    default_code = "PAYMENT_FAILED"


class ConcurrencyError(BillingError):
    status_code = 409
    default_code = "CUSTOMER_LOCKED"


def customer_not_found(customer_id: str) -> NotFoundError:
    return NotFoundError(f"Customer not found: {customer_id}", "CUSTOMER_NOT_FOUND")


def plan_not_found(plan_code: str) -> NotFoundError:
    return NotFoundError(f"Plan not found: {plan_code}", "PLAN_NOT_FOUND")


def price_not_found(plan_code: str, interval: str) -> NotFoundError:
    return NotFoundError(
        f"No price found for plan {plan_code} with interval {interval}", "PRICE_NOT_FOUND"
    )


def subscription_not_found(detail: str = "No active subscription found") -> NotFoundError:
    return NotFoundError(detail, "SUBSCRIPTION_NOT_FOUND")


def capability_not_supported(capability: str) -> PreconditionError:
    return PreconditionError(
        f"Payment adapter does not support {capability}", "CAPABILITY_NOT_SUPPORTED"
    )


def payment_not_found(payment_id: str) -> NotFoundError:
    return NotFoundError(f"Payment not found: {payment_id}", "PAYMENT_NOT_FOUND")
