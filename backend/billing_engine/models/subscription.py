"""
Subscription model for card-on-file recurring billing.
"""
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Integer, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from billing_engine.db.base import Base


class Subscription(Base):
    """
    Subscription model - a recurring billing agreement.

    status, retries, next_bill_at, paused_at and canceled_at are written only
    by SubscriptionLifecycle.
    """

    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False)

    # Lifecycle
    status = Column(String(20), nullable=False, default="active", index=True)  # active, past_due, canceled
    paused_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Billing terms
    amount = Column(Integer, nullable=False)  # minor currency units
    interval = Column(String(20), nullable=False)  # monthly, yearly
    next_bill_at = Column(DateTime, nullable=False, index=True)

    # Retry bookkeeping
    retries = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)

    # Payment reference (display-only, never the full credential)
    vault_token = Column(String(255), nullable=True, index=True)
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)
    card_bin = Column(String(6), nullable=True)
    card_exp_month = Column(Integer, nullable=True)
    card_exp_year = Column(Integer, nullable=True)
    card_updated_at = Column(DateTime, nullable=True)

    # Feature flags
    auto_card_updater_enabled = Column(Boolean, default=True, nullable=False)
    network_token_enabled = Column(Boolean, default=False, nullable=False)
    network_token = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    customer = relationship("Customer", back_populates="subscriptions")
    plan = relationship("Plan")

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def __repr__(self):
        return f"<Subscription(id={self.id}, status={self.status}, retries={self.retries})>"
