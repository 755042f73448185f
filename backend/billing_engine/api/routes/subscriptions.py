"""
API endpoints for subscription management.

Endpoints:
- GET /subscriptions/{id} - Get subscription details
- POST /subscriptions/{id}/pause - Exclude from billing runs
- POST /subscriptions/{id}/resume - Include in billing runs again
- POST /subscriptions/{id}/cancel - Cancel; no further charges
"""
import uuid
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_engine.api.dependencies import get_lifecycle
from billing_engine.core.exceptions import NotFoundError
from billing_engine.core.operator_auth import require_operator
from billing_engine.db.base import get_db
from billing_engine.models import Subscription
from billing_engine.schemas import ApiResponse, SubscriptionDetail
from billing_engine.services.lifecycle import SubscriptionLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


def _get_subscription(db: Session, subscription_id: uuid.UUID) -> Subscription:
    subscription = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .first()
    )
    if subscription is None:
        raise NotFoundError(f"Subscription not found: {subscription_id}")
    return subscription


def _detail(subscription: Subscription) -> dict:
    return SubscriptionDetail.model_validate(subscription).model_dump(mode="json")


@router.get("/{subscription_id}", response_model=ApiResponse)
async def get_subscription(subscription_id: uuid.UUID, db: Session = Depends(get_db)):
    """Get subscription details, including display-only card data."""
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if subscription is None:
        raise NotFoundError(f"Subscription not found: {subscription_id}")
    return ApiResponse(success=True, data=_detail(subscription))


@router.post("/{subscription_id}/pause", response_model=ApiResponse)
async def pause_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = lifecycle.pause(_get_subscription(db, subscription_id))
    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription_id} paused by operator")
    return ApiResponse(success=True, message="Subscription paused", data=_detail(subscription))


@router.post("/{subscription_id}/resume", response_model=ApiResponse)
async def resume_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = lifecycle.resume(_get_subscription(db, subscription_id))
    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription_id} resumed by operator")
    return ApiResponse(success=True, message="Subscription resumed", data=_detail(subscription))


@router.post("/{subscription_id}/cancel", response_model=ApiResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """Cancel a subscription. Pending retries are skipped and no further charges are made."""
    subscription = lifecycle.cancel(_get_subscription(db, subscription_id))
    db.commit()
    db.refresh(subscription)
    return ApiResponse(success=True, message="Subscription canceled", data=_detail(subscription))
