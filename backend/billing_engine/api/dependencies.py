"""
FastAPI dependencies that assemble the billing services per request.

Tests replace get_gateway, get_insight_publisher or get_config through
app.dependency_overrides.
"""
from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from billing_engine.core.config import BillingConfig, get_billing_config, settings
from billing_engine.db.base import get_db
from billing_engine.services.analytics import BillingAnalytics
from billing_engine.services.billing_run import BillingRunOrchestrator
from billing_engine.services.gateway import NMIGateway
from billing_engine.services.insights import CeleryInsightPublisher, InsightPublisher
from billing_engine.services.lifecycle import SubscriptionLifecycle
from billing_engine.services.transaction_processor import TransactionProcessor
from billing_engine.services.vault import VaultManager


def get_config() -> BillingConfig:
    return get_billing_config()


def get_gateway() -> Generator[NMIGateway, None, None]:
    gateway = NMIGateway.from_settings(settings)
    try:
        yield gateway
    finally:
        gateway.close()


def get_insight_publisher() -> InsightPublisher:
    return CeleryInsightPublisher()


def get_processor(
    db: Session = Depends(get_db),
    gateway: NMIGateway = Depends(get_gateway),
    config: BillingConfig = Depends(get_config),
    publisher: InsightPublisher = Depends(get_insight_publisher),
) -> TransactionProcessor:
    return TransactionProcessor(db, gateway, config, publisher=publisher)


def get_vault_manager(
    db: Session = Depends(get_db),
    gateway: NMIGateway = Depends(get_gateway),
    config: BillingConfig = Depends(get_config),
) -> VaultManager:
    return VaultManager(db, gateway, config)


def get_orchestrator(
    db: Session = Depends(get_db),
    processor: TransactionProcessor = Depends(get_processor),
    config: BillingConfig = Depends(get_config),
) -> BillingRunOrchestrator:
    return BillingRunOrchestrator(db, processor, config)


def get_lifecycle(db: Session = Depends(get_db)) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(db)


def get_analytics(
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_config),
) -> BillingAnalytics:
    return BillingAnalytics(db, config)
