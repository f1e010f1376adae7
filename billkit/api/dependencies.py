# billkit/api/dependencies.py
from fastapi import HTTPException, Request, status

from ..core.exceptions import BillingError
from ..engine import BillingEngine


def get_billing(request: Request) -> BillingEngine:
    """The engine the host application mounted on app.state"""
    billing = getattr(request.app.state, "billing", None)
    if billing is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing engine not configured"
        )
    return billing


def http_error(error: BillingError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
