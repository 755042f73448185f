"""
Pydantic schemas for API request/response validation.
"""
from billing_engine.schemas.billing import (
    ApiResponse,
    CardInput,
    ChargeInitialRequest,
    ChargeRecurringRequest,
    UpdateCardRequest,
    ManualRetryRequest,
    ResolveReconciliationRequest,
    ReconciliationItemDetail,
    NetworkTokenRequest,
    CardUpdaterRequest,
)
from billing_engine.schemas.subscription import (
    SubscriptionDetail,
    SubscriptionStatus,
    BillingInterval,
)
from billing_engine.schemas.analytics import (
    AnalyticsQuery,
    DescriptorValidateRequest,
)

__all__ = [
    # Billing
    "ApiResponse",
    "CardInput",
    "ChargeInitialRequest",
    "ChargeRecurringRequest",
    "UpdateCardRequest",
    "ManualRetryRequest",
    "ResolveReconciliationRequest",
    "ReconciliationItemDetail",
    "NetworkTokenRequest",
    "CardUpdaterRequest",
    # Subscription
    "SubscriptionDetail",
    "SubscriptionStatus",
    "BillingInterval",
    # Analytics
    "AnalyticsQuery",
    "DescriptorValidateRequest",
]
