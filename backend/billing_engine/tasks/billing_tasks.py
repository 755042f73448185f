"""
Celery tasks for scheduled billing work.

Tasks:
- run_recurring_billing: Charge every subscription whose next bill is due
- process_due_retries: Execute retries whose scheduled time has passed
- run_card_updater: Sweep near-expiry and past-due cards through the card updater
- record_decline_insight: Increment a DeclineInsight counter
"""
import logging
from datetime import date

from billing_engine.core.celery_app import celery_app
from billing_engine.core.config import get_billing_config, settings
from billing_engine.db.base import SessionLocal
from billing_engine.services import insights
from billing_engine.services.billing_run import BillingRunOrchestrator
from billing_engine.services.gateway import NMIGateway
from billing_engine.services.transaction_processor import TransactionProcessor
from billing_engine.services.vault import VaultManager

logger = logging.getLogger(__name__)


def _orchestrator(db, gateway) -> BillingRunOrchestrator:
    config = get_billing_config()
    processor = TransactionProcessor(db, gateway, config, publisher=insights.CeleryInsightPublisher())
    return BillingRunOrchestrator(db, processor, config)


@celery_app.task
def run_recurring_billing():
    """Scheduled billing run."""
    db = SessionLocal()
    gateway = NMIGateway.from_settings(settings)
    try:
        summary = _orchestrator(db, gateway).run_due_subscriptions()
        return summary.to_dict()["summary"]
    finally:
        gateway.close()
        db.close()


@celery_app.task
def process_due_retries():
    """Scheduled retry run."""
    db = SessionLocal()
    gateway = NMIGateway.from_settings(settings)
    try:
        summary = _orchestrator(db, gateway).process_due_retries()
        return summary.to_dict()["summary"]
    finally:
        gateway.close()
        db.close()


@celery_app.task
def run_card_updater():
    """Daily automatic card updater sweep."""
    db = SessionLocal()
    gateway = NMIGateway.from_settings(settings)
    try:
        result = VaultManager(db, gateway, get_billing_config()).run_card_updater()
        return result["summary"]
    finally:
        gateway.close()
        db.close()


@celery_app.task(
    bind=True,
    max_retries=5,
    default_retry_delay=30,
)
def record_decline_insight(self, event: dict):
    """
    Increment the DeclineInsight bucket for one decline.

    Args:
        event: DeclineEvent.to_dict() payload
    """
    db = SessionLocal()
    try:
        row = insights.record_decline_insight(
            db,
            day=date.fromisoformat(event["day"]),
            response_code=event["response_code"],
            response_text=event.get("response_text"),
            card_brand=event.get("card_brand"),
            retry_stage=event["retry_stage"],
        )
        return {"id": str(row.id), "decline_count": row.decline_count}
    except Exception as e:
        db.rollback()
        logger.warning(f"Decline insight write failed, retrying: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
