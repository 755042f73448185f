"""
Retry scheduling, decline analytics and reconciliation models.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, DateTime, Integer, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from billing_engine.db.base import Base


class RetrySchedule(Base):
    """A pending or resolved retry. At most one pending row per subscription."""

    __tablename__ = "retry_schedule"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    retry_attempt = Column(Integer, nullable=False)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, executed, skipped
    descriptor_suffix = Column(String(22), nullable=False, default="")
    executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<RetrySchedule(subscription_id={self.subscription_id}, attempt={self.retry_attempt}, status={self.status})>"


class DeclineInsight(Base):
    """
    Daily decline counter per response code, card brand and retry stage.

    Rows are only ever incremented.
    """

    __tablename__ = "decline_insights"
    __table_args__ = (
        UniqueConstraint("date", "response_code", "card_brand", "retry_stage", name="uq_decline_insight_bucket"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    date = Column(Date, nullable=False, index=True)
    response_code = Column(String(10), nullable=False)
    response_text = Column(Text, nullable=True)
    card_brand = Column(String(20), nullable=False, default="unknown")
    retry_stage = Column(String(20), nullable=False)  # initial, retry_1, retry_2, ...
    decline_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DeclineInsight(date={self.date}, code={self.response_code}, count={self.decline_count})>"


class ReconciliationItem(Base):
    """
    Charge attempt whose outcome needs an operator: unknown gateway outcome
    (timeout, 5xx) or an approved first charge that returned no vault token.

    While pending, the subscription is excluded from billing runs so the
    engine never blindly charges a second time.
    """

    __tablename__ = "reconciliation_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(UUID(as_uuid=True), ForeignKey("transactions.id"), nullable=False, unique=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    order_id = Column(String(64), nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, resolved
    resolution = Column(String(20), nullable=True)  # charged, not_charged
    note = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ReconciliationItem(order_id={self.order_id}, status={self.status})>"
