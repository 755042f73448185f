"""
Customer and plan models.
"""
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from billing_engine.db.base import Base


class Customer(Base):
    """Billable customer, resolved by email on the first charge."""

    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    subscriptions = relationship("Subscription", back_populates="customer")

    def __repr__(self):
        return f"<Customer(id={self.id}, email={self.email})>"


class Plan(Base):
    """Priced billing plan."""

    __tablename__ = "plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    amount = Column(Integer, nullable=False)  # minor currency units
    interval = Column(String(20), nullable=False)  # monthly, yearly
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Plan(id={self.id}, name={self.name}, amount={self.amount}, interval={self.interval})>"
