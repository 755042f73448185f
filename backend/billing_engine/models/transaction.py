"""
Transaction model - one immutable record per charge attempt.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID

from billing_engine.db.base import Base


class Transaction(Base):
    """
    Charge attempt record.

    Written once, right after the gateway answers. The only later change is
    attaching subscription_id once a CIT has created the subscription.
    """

    __tablename__ = "transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    gateway_transaction_id = Column(String(64), nullable=True)

    # Linkage
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)

    # Outcome
    status = Column(String(20), nullable=False, index=True)  # approved, declined, error
    response_code = Column(String(10), nullable=True, index=True)
    response_text = Column(Text, nullable=True)
    auth_code = Column(String(32), nullable=True)

    # Context
    amount = Column(Integer, nullable=False)
    initiator = Column(String(20), nullable=False)  # customer, merchant
    recurring = Column(String(20), nullable=False)  # initial, subsequent
    descriptor = Column(String(22), nullable=True)
    retry_attempt = Column(Integer, default=0, nullable=False, index=True)
    decline_category = Column(String(50), nullable=True)
    issuer_bin = Column(String(6), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"

    def __repr__(self):
        return f"<Transaction(id={self.id}, order_id={self.order_id}, status={self.status})>"
