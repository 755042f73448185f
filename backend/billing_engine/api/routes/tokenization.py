"""
API endpoints for card vault maintenance.

Endpoints:
- POST /tokenization/enable-network-tokens - Network-tokenize one subscription's card
- POST /tokenization/batch-enable-network-tokens - Tokenize every eligible subscription
- POST /tokenization/run-card-updater - Automatic card updater sweep
- GET /tokenization/status - Tokenization and updater coverage
- GET /tokenization/expiration-report - Cards expiring soon
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from billing_engine.api.dependencies import get_vault_manager
from billing_engine.core.operator_auth import require_operator
from billing_engine.schemas import ApiResponse, CardUpdaterRequest, NetworkTokenRequest
from billing_engine.services.vault import VaultManager

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


@router.post("/enable-network-tokens", response_model=ApiResponse)
def enable_network_tokens(
    payload: NetworkTokenRequest,
    vault: VaultManager = Depends(get_vault_manager),
):
    token = vault.enable_network_tokenization(payload.subscription_id)
    return ApiResponse(
        success=True,
        message="Network tokenization enabled successfully",
        data={
            "subscription_id": str(payload.subscription_id),
            "network_token": token.network_token,
            "cryptogram": token.cryptogram,
        },
    )


@router.post("/batch-enable-network-tokens", response_model=ApiResponse)
def batch_enable_network_tokens(vault: VaultManager = Depends(get_vault_manager)):
    result = vault.batch_enable_network_tokens()
    return ApiResponse(success=True, message="Network tokenization batch completed", data=result)


@router.post("/run-card-updater", response_model=ApiResponse)
def run_card_updater(
    payload: Optional[CardUpdaterRequest] = None,
    vault: VaultManager = Depends(get_vault_manager),
):
    """Refresh near-expiry and past-due cards (or the given subscriptions) via the card updater."""
    payload = payload or CardUpdaterRequest()
    result = vault.run_card_updater(payload.subscription_ids, force=payload.force_update)
    return ApiResponse(
        success=True,
        message=f"Card updater completed for {result['summary']['total']} subscriptions",
        data=result,
    )


@router.get("/status", response_model=ApiResponse)
def tokenization_status(vault: VaultManager = Depends(get_vault_manager)):
    return ApiResponse(success=True, data=vault.tokenization_status())


@router.get("/expiration-report", response_model=ApiResponse)
def expiration_report(
    months_ahead: int = Query(3, ge=0, le=24),
    vault: VaultManager = Depends(get_vault_manager),
):
    return ApiResponse(success=True, data=vault.expiration_report(months_ahead))
