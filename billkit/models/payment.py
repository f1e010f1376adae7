# billkit/models/payment.py
from sqlalchemy import JSON, Column, DateTime, Integer, String

from ..core.database import Base


class PaymentRecord(Base):
    __tablename__ = "billing_payments"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), nullable=False, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)

    type = Column(String, nullable=False)  # subscription, renewal, upgrade, refund
    status = Column(String, nullable=False)  # pending, succeeded, failed, refunded

    # Minor currency units, negative for refunds
    amount = Column(Integer, nullable=False)
    currency = Column(String, default="usd")
    refunded_amount = Column(Integer, default=0)

    provider_payment_id = Column(String, index=True)

    # One logical charge, e.g. the renewal of one billing period
    idempotency_key = Column(String, nullable=True, index=True)

    metadata_ = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
