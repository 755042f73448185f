"""
Pydantic schemas for subscription operations.
"""
import uuid
from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel


SubscriptionStatus = Literal["active", "past_due", "canceled"]
BillingInterval = Literal["monthly", "yearly"]


class SubscriptionDetail(BaseModel):
    """Subscription as shown to operators. Card data is display-only."""
    id: uuid.UUID
    customer_id: uuid.UUID
    plan_id: uuid.UUID
    status: SubscriptionStatus
    is_paused: bool
    paused_at: Optional[datetime]
    canceled_at: Optional[datetime]
    amount: int
    interval: BillingInterval
    next_bill_at: datetime
    retries: int
    last_attempt_at: Optional[datetime]
    card_last_four: Optional[str]
    card_brand: Optional[str]
    card_exp_month: Optional[int]
    card_exp_year: Optional[int]
    card_updated_at: Optional[datetime]
    auto_card_updater_enabled: bool
    network_token_enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
