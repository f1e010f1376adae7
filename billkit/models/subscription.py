# billkit/models/subscription.py
from sqlalchemy import JSON, Column, DateTime, String

from ..core.database import Base


class SubscriptionRecord(Base):
    __tablename__ = "billing_subscriptions"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), nullable=False, index=True)

    # Plan
    plan_code = Column(String, nullable=False)
    interval = Column(String, nullable=False)  # monthly, quarterly, yearly
    status = Column(String, nullable=False, index=True)

    # Dates
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_start = Column(DateTime(timezone=True))
    trial_end = Column(DateTime(timezone=True))
    cancel_at = Column(DateTime(timezone=True))
    canceled_at = Column(DateTime(timezone=True))

    # Downgrade queued for the next renewal
    scheduled_plan_code = Column(String)
    scheduled_interval = Column(String)

    # Provider Integration
    provider_subscription_id = Column(String)
    provider_checkout_session_id = Column(String, index=True)

    metadata_ = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
