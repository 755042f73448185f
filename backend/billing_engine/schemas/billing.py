"""
Pydantic schemas for billing operations.
"""
import uuid
from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    """Envelope returned by every operator endpoint."""
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None


class CardInput(BaseModel):
    """Raw card data for a customer-initiated request. Never stored."""
    card_number: str = Field(..., min_length=12, max_length=23, description="Card number (PAN)")
    card_exp: str = Field(..., min_length=4, max_length=5, description="Expiry as MMYY")
    cvv: str = Field("", max_length=4)
    zip: str = Field("", max_length=10)

    def __repr__(self):
        return f"CardInput(last_four={self.card_number[-4:]}, exp={self.card_exp})"


class ChargeInitialRequest(BaseModel):
    """First charge for a new subscription."""
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    plan_id: uuid.UUID
    card: CardInput


class ChargeRecurringRequest(BaseModel):
    subscription_id: uuid.UUID


class UpdateCardRequest(BaseModel):
    """Replace the card behind a subscription's vault token."""
    subscription_id: uuid.UUID
    card: CardInput


class ManualRetryRequest(BaseModel):
    force_descriptor: Optional[str] = Field(None, description="Descriptor to use instead of the policy's choice")


class ResolveReconciliationRequest(BaseModel):
    """Outcome of a charge attempt once confirmed with the gateway."""
    charged: bool = Field(..., description="True if the customer was actually charged")
    note: Optional[str] = Field(None, max_length=2000)


class ReconciliationItemDetail(BaseModel):
    """Charge attempt awaiting reconciliation."""
    id: uuid.UUID
    transaction_id: uuid.UUID
    subscription_id: Optional[uuid.UUID]
    order_id: str
    status: str
    resolution: Optional[str]
    note: Optional[str]
    resolved_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class NetworkTokenRequest(BaseModel):
    subscription_id: uuid.UUID


class CardUpdaterRequest(BaseModel):
    """Card updater sweep. Without ids, near-expiry and past-due subscriptions are picked."""
    subscription_ids: Optional[List[uuid.UUID]] = None
    force_update: bool = False
