# billkit/models/customer.py
from sqlalchemy import JSON, Column, DateTime, String

from ..core.database import Base


class CustomerRecord(Base):
    __tablename__ = "billing_customers"

    id = Column(String(36), primary_key=True)
    external_id = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)

    # Set once the provider has a payment method on file
    provider_customer_id = Column(String, nullable=True, index=True)

    metadata_ = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
