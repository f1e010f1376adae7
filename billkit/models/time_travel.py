# billkit/models/time_travel.py
from sqlalchemy import Column, DateTime, String

from ..core.database import Base


class TimeTravelRecord(Base):
    """Simulated clock shared by every process that opens the same database"""

    __tablename__ = "billing_time_travel"

    # "current" for the global clock, "customer:<external id>" per customer
    id = Column(String(191), primary_key=True)
    customer_id = Column(String(191), nullable=True, index=True)

    simulated_time = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
