"""
API endpoints for billing analytics.

Endpoints:
- GET /analytics/dashboard - KPIs, decline insights and performance breakdowns
- GET /analytics/decline-insights - Decline distribution, brand/descriptor performance, trends
- GET /analytics/retry-analytics - Retry success rates and schedule summary
- POST /analytics/descriptor-config/validate - Validate a descriptor base
"""
import logging

from fastapi import APIRouter, Depends

from billing_engine.api.dependencies import get_analytics
from billing_engine.core.config import MAX_DESCRIPTOR_LENGTH
from billing_engine.core.operator_auth import require_operator
from billing_engine.schemas import AnalyticsQuery, ApiResponse, DescriptorValidateRequest
from billing_engine.services.analytics import AnalyticsFilter, BillingAnalytics
from billing_engine.services.descriptor_policy import validate_base

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


def _filter(query: AnalyticsQuery) -> AnalyticsFilter:
    return AnalyticsFilter(**query.model_dump())


@router.get("/dashboard", response_model=ApiResponse)
async def dashboard(
    query: AnalyticsQuery = Depends(),
    analytics: BillingAnalytics = Depends(get_analytics),
):
    """Dashboard for the given period (default: last 30 days)."""
    return ApiResponse(success=True, data=analytics.dashboard(_filter(query)))


@router.get("/decline-insights", response_model=ApiResponse)
async def decline_insights(
    query: AnalyticsQuery = Depends(),
    analytics: BillingAnalytics = Depends(get_analytics),
):
    return ApiResponse(success=True, data=analytics.decline_insights(_filter(query)))


@router.get("/retry-analytics", response_model=ApiResponse)
async def retry_analytics(
    query: AnalyticsQuery = Depends(),
    analytics: BillingAnalytics = Depends(get_analytics),
):
    return ApiResponse(success=True, data=analytics.retry_analytics(_filter(query)))


@router.post("/descriptor-config/validate", response_model=ApiResponse)
async def validate_descriptor(payload: DescriptorValidateRequest):
    """Check a descriptor base against the card-network length limit."""
    descriptor = validate_base(payload.descriptor)
    return ApiResponse(
        success=True,
        message="Descriptor is valid",
        data={"descriptor": descriptor, "length": len(descriptor), "max_length": MAX_DESCRIPTOR_LENGTH},
    )
