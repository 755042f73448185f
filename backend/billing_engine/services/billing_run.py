"""
Billing run orchestrator.

Selects due work and feeds it to the TransactionProcessor one item at a time,
with a courtesy delay between gateway calls. A failure on one item is
recorded in the run summary and never stops the run.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, exists
from sqlalchemy.orm import Session

from billing_engine.core.config import BillingConfig
from billing_engine.core.exceptions import BillingError
from billing_engine.models import ReconciliationItem, RetrySchedule, Subscription
from billing_engine.services.lifecycle import ACTIVE
from billing_engine.services.transaction_processor import (
    ChargeResult,
    RetryContext,
    TransactionProcessor,
)

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Counts and per-item results for one run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def record_charge(self, subscription_id, result: ChargeResult, **extra) -> None:
        status = "processed" if result.approved else "failed"
        if result.approved:
            self.successful += 1
        else:
            self.failed += 1
        self.results.append(
            {
                "subscription_id": str(subscription_id),
                "status": status,
                "message": result.message,
                "order_id": result.transaction.order_id,
                "amount": result.transaction.amount,
                **extra,
            }
        )

    def record_error(self, subscription_id, error: Exception, **extra) -> None:
        self.errors += 1
        message = error.message if isinstance(error, BillingError) else str(error)
        self.results.append(
            {"subscription_id": str(subscription_id), "status": "error", "message": message, **extra}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
                "errors": self.errors,
            },
            "results": self.results,
        }


def _no_pending_reconciliation():
    return ~exists().where(
        and_(
            ReconciliationItem.subscription_id == Subscription.id,
            ReconciliationItem.status == "pending",
        )
    )


def _no_pending_retry():
    return ~exists().where(
        and_(
            RetrySchedule.subscription_id == Subscription.id,
            RetrySchedule.status == "pending",
        )
    )


class BillingRunOrchestrator:
    """Periodic billing and retry runs."""

    def __init__(
        self,
        db: Session,
        processor: TransactionProcessor,
        config: BillingConfig,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.processor = processor
        self.config = config
        self.clock = clock
        self.sleep = sleep

    def due_subscriptions(self, now: datetime) -> List[Subscription]:
        """
        Active, unpaused subscriptions whose next bill is due.

        Subscriptions waiting on a scheduled retry belong to the retry run,
        and those with an unreconciled attempt are held back entirely.
        """
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == ACTIVE,
                Subscription.paused_at.is_(None),
                Subscription.next_bill_at <= now,
                _no_pending_reconciliation(),
                _no_pending_retry(),
            )
            .order_by(Subscription.next_bill_at)
            .all()
        )

    def due_retries(self, now: datetime) -> List[RetrySchedule]:
        return (
            self.db.query(RetrySchedule)
            .join(Subscription, Subscription.id == RetrySchedule.subscription_id)
            .filter(
                RetrySchedule.status == "pending",
                RetrySchedule.scheduled_at <= now,
                Subscription.status == ACTIVE,
                Subscription.paused_at.is_(None),
                _no_pending_reconciliation(),
            )
            .order_by(RetrySchedule.scheduled_at)
            .all()
        )

    def run_due_subscriptions(self, now: Optional[datetime] = None) -> RunSummary:
        """Charge every due subscription once."""
        now = now or self.clock()
        due = self.due_subscriptions(now)
        summary = RunSummary(total=len(due))
        logger.info(f"Found {len(due)} subscriptions due for billing")

        for index, subscription in enumerate(due):
            subscription_id = subscription.id
            if index:
                self.sleep(self.config.inter_charge_delay_seconds)
            try:
                result = self.processor.charge_recurring(subscription_id)
                summary.record_charge(subscription_id, result)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error processing subscription {subscription_id}: {e}", exc_info=True)
                summary.record_error(subscription_id, e)

        logger.info(
            f"Billing run complete: {summary.successful} successful, "
            f"{summary.failed} failed, {summary.errors} errors"
        )
        return summary

    def process_due_retries(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Execute every retry whose scheduled time has passed.

        Each entry is marked executed before the charge so a crash mid-run
        cannot replay it. If the charge is never attempted (state changed,
        gateway unreachable) the entry is marked skipped instead.
        """
        now = now or self.clock()
        due = self.due_retries(now)
        summary = RunSummary(total=len(due))
        logger.info(f"Found {len(due)} retries due")

        for index, entry in enumerate(due):
            subscription_id = entry.subscription_id
            context = RetryContext(attempt=entry.retry_attempt, descriptor_suffix=entry.descriptor_suffix)
            if index:
                self.sleep(self.config.retry_run_delay_seconds)

            entry.status = "executed"
            entry.executed_at = self.clock()
            self.db.commit()

            try:
                result = self.processor.charge_recurring(subscription_id, retry_context=context)
                summary.record_charge(subscription_id, result, retry_attempt=context.attempt)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    f"Retry {context.attempt} for subscription {subscription_id} not completed: {e}",
                    exc_info=True,
                )
                entry.status = "skipped"
                self.db.commit()
                summary.record_error(subscription_id, e, retry_attempt=context.attempt)

        logger.info(
            f"Retry run complete: {summary.successful} recovered, "
            f"{summary.failed} declined, {summary.errors} errors"
        )
        return summary
