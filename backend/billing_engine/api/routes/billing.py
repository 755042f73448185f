"""
API endpoints for charging and billing runs.

Endpoints:
- POST /billing/charge-initial - First (customer-initiated) charge, creates the subscription
- POST /billing/charge-recurring - Merchant-initiated charge against the vault token
- POST /billing/update-card - Replace the card behind a subscription
- POST /billing/run-recurring-billing - Charge every due subscription
- POST /billing/process-retries - Execute due retries
- POST /billing/manual-retry/{subscription_id} - Operator-triggered charge
- GET /billing/reconciliation - Charge attempts awaiting reconciliation
- POST /billing/reconciliation/{item_id}/resolve - Record the confirmed outcome

Handlers call the gateway synchronously, so they are plain functions and run
in the threadpool.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request

from billing_engine.api.dependencies import (
    get_orchestrator,
    get_processor,
    get_vault_manager,
)
from billing_engine.core.operator_auth import require_operator
from billing_engine.core.rate_limit import CHARGE_RATE_LIMIT, limiter
from billing_engine.schemas import (
    ApiResponse,
    ChargeInitialRequest,
    ChargeRecurringRequest,
    ManualRetryRequest,
    ReconciliationItemDetail,
    ResolveReconciliationRequest,
    SubscriptionDetail,
    UpdateCardRequest,
)
from billing_engine.services.billing_run import BillingRunOrchestrator
from billing_engine.services.gateway import CardDetails
from billing_engine.services.transaction_processor import CustomerIdentity, TransactionProcessor
from billing_engine.services.vault import VaultManager

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


def _card(payload) -> CardDetails:
    return CardDetails(
        number=payload.card_number,
        exp=payload.card_exp,
        cvv=payload.cvv,
        zip=payload.zip,
    )


@router.post("/charge-initial", response_model=ApiResponse)
@limiter.limit(CHARGE_RATE_LIMIT)
def charge_initial(
    request: Request,
    payload: ChargeInitialRequest,
    processor: TransactionProcessor = Depends(get_processor),
):
    """
    Customer-initiated first charge.

    Vaults the card with the sale and creates an active subscription when
    the sale is approved. Declines return 402 with the decline analysis.
    """
    result = processor.charge_initial(
        CustomerIdentity(email=payload.email, name=payload.name),
        payload.plan_id,
        _card(payload.card),
    )
    result.raise_for_decline()
    return ApiResponse(success=True, message=result.message, data=result.to_dict())


@router.post("/charge-recurring", response_model=ApiResponse)
@limiter.limit(CHARGE_RATE_LIMIT)
def charge_recurring(
    request: Request,
    payload: ChargeRecurringRequest,
    processor: TransactionProcessor = Depends(get_processor),
):
    """Merchant-initiated charge against the subscription's stored vault token."""
    result = processor.charge_recurring(payload.subscription_id)
    result.raise_for_decline()
    return ApiResponse(success=True, message=result.message, data=result.to_dict())


@router.post("/update-card", response_model=ApiResponse)
@limiter.limit(CHARGE_RATE_LIMIT)
def update_card(
    request: Request,
    payload: UpdateCardRequest,
    vault: VaultManager = Depends(get_vault_manager),
):
    """Customer-initiated card replacement. Reactivates past-due subscriptions."""
    subscription = vault.update_card(payload.subscription_id, _card(payload.card))
    return ApiResponse(
        success=True,
        message="Payment method updated successfully",
        data=SubscriptionDetail.model_validate(subscription).model_dump(mode="json"),
    )


@router.post("/run-recurring-billing", response_model=ApiResponse)
def run_recurring_billing(orchestrator: BillingRunOrchestrator = Depends(get_orchestrator)):
    """Charge every subscription whose next bill is due."""
    summary = orchestrator.run_due_subscriptions()
    return ApiResponse(
        success=True,
        message=f"Processed {summary.total} subscriptions",
        data=summary.to_dict(),
    )


@router.post("/process-retries", response_model=ApiResponse)
def process_retries(orchestrator: BillingRunOrchestrator = Depends(get_orchestrator)):
    """Execute every retry whose scheduled time has passed."""
    summary = orchestrator.process_due_retries()
    return ApiResponse(
        success=True,
        message=f"Processed {summary.total} retries",
        data=summary.to_dict(),
    )


@router.post("/manual-retry/{subscription_id}", response_model=ApiResponse)
@limiter.limit(CHARGE_RATE_LIMIT)
def manual_retry(
    request: Request,
    subscription_id: uuid.UUID,
    payload: Optional[ManualRetryRequest] = None,
    processor: TransactionProcessor = Depends(get_processor),
):
    force_descriptor = payload.force_descriptor if payload else None
    result = processor.manual_retry(subscription_id, force_descriptor=force_descriptor)
    result.raise_for_decline()
    return ApiResponse(success=True, message=result.message, data=result.to_dict())


@router.get("/reconciliation", response_model=ApiResponse)
def list_reconciliation(processor: TransactionProcessor = Depends(get_processor)):
    items = processor.list_pending_reconciliations()
    return ApiResponse(
        success=True,
        data=[ReconciliationItemDetail.model_validate(i).model_dump(mode="json") for i in items],
    )


@router.post("/reconciliation/{item_id}/resolve", response_model=ApiResponse)
def resolve_reconciliation(
    item_id: uuid.UUID,
    payload: ResolveReconciliationRequest,
    processor: TransactionProcessor = Depends(get_processor),
):
    """Close a reconciliation item once the gateway outcome has been confirmed."""
    item = processor.resolve_reconciliation(item_id, charged=payload.charged, note=payload.note)
    logger.info(f"Operator resolved reconciliation {item_id} (charged={payload.charged})")
    return ApiResponse(
        success=True,
        message="Reconciliation item resolved",
        data=ReconciliationItemDetail.model_validate(item).model_dump(mode="json"),
    )
