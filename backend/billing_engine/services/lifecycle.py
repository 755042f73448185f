"""
Subscription lifecycle controller.

The only code allowed to write Subscription.status, retries, next_bill_at,
paused_at and canceled_at. Methods stage changes on the session; callers own
the commit so the subscription update lands together with the transaction
record that caused it.

Transitions:
    active   --charge fails, retry-->          active (retries + 1, retry scheduled)
    active   --charge fails, card fix-->       past_due
    active   --charge fails, terminal-->       canceled
    active|past_due --charge succeeds-->       active (retries = 0)
    past_due --credential updated-->           active (retries = 0)
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from billing_engine.core.exceptions import StateConflictError
from billing_engine.models import RetrySchedule, Subscription
from billing_engine.services.card_utils import advance_by_interval
from billing_engine.services.retry_scheduler import (
    ACTION_CANCELED,
    ACTION_PAST_DUE,
    ACTION_RETRY,
    RetryDecision,
)

logger = logging.getLogger(__name__)

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"


class SubscriptionLifecycle:
    """State machine over Subscription rows."""

    def __init__(self, db: Session):
        self.db = db

    def open(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Initialize a subscription created by a successful first charge."""
        now = now or datetime.utcnow()
        subscription.status = ACTIVE
        subscription.retries = 0
        subscription.last_attempt_at = now
        subscription.next_bill_at = advance_by_interval(now, subscription.interval)
        return subscription

    def record_success(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        """Successful charge: reset retries and bill again one interval later."""
        if subscription.status == CANCELED:
            raise StateConflictError("Canceled subscriptions accept no charges")

        now = now or datetime.utcnow()
        previous = subscription.next_bill_at
        anchor = max(now, previous) if previous else now

        subscription.status = ACTIVE
        subscription.retries = 0
        subscription.last_attempt_at = now
        subscription.next_bill_at = advance_by_interval(anchor, subscription.interval)
        self._skip_pending_retries(subscription, now)

        logger.info(
            f"Subscription {subscription.id} charged; next bill at {subscription.next_bill_at.isoformat()}"
        )
        return subscription

    def record_decline(
        self,
        subscription: Subscription,
        decision: RetryDecision,
        now: Optional[datetime] = None,
    ) -> Optional[RetrySchedule]:
        """
        Apply a retry decision to a declined charge.

        Returns:
            The new pending RetrySchedule entry when a retry was scheduled
        """
        if subscription.status != ACTIVE:
            raise StateConflictError(
                f"Cannot record a decline on a {subscription.status} subscription"
            )

        now = now or datetime.utcnow()
        subscription.last_attempt_at = now

        if decision.action == ACTION_RETRY:
            if decision.retry_at is None or decision.retry_at <= now:
                raise ValueError("Retry time must be in the future")

            self._skip_pending_retries(subscription, now)
            subscription.retries = subscription.retries + 1
            subscription.next_bill_at = decision.retry_at

            entry = RetrySchedule(
                subscription_id=subscription.id,
                retry_attempt=subscription.retries,
                scheduled_at=decision.retry_at,
                status="pending",
                descriptor_suffix=decision.descriptor_suffix,
            )
            self.db.add(entry)
            logger.info(
                f"Retry {subscription.retries} scheduled for subscription {subscription.id} "
                f"at {decision.retry_at.isoformat()}"
            )
            return entry

        if decision.action == ACTION_PAST_DUE:
            subscription.status = PAST_DUE
        elif decision.action == ACTION_CANCELED:
            subscription.status = CANCELED
            subscription.canceled_at = now
        else:
            raise ValueError(f"Unknown retry action: {decision.action}")

        self._skip_pending_retries(subscription, now)
        logger.warning(
            f"Subscription {subscription.id} moved to {subscription.status} ({decision.reason})"
        )
        return None

    def record_credential_update(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        """
        A new or refreshed card was stored.

        Reactivates past_due subscriptions with retries reset. An active
        subscription mid-retry also starts over with a clean count and its
        pending retry is dropped.
        """
        if subscription.status == CANCELED:
            raise StateConflictError("Canceled subscriptions cannot be reactivated by a card update")

        now = now or datetime.utcnow()
        was_past_due = subscription.status == PAST_DUE

        # next_bill_at is left alone: an overdue one is picked up by the next run
        subscription.status = ACTIVE
        subscription.retries = 0
        self._skip_pending_retries(subscription, now)

        if was_past_due:
            logger.info(f"Subscription {subscription.id} reactivated after credential update")
        return subscription

    def pause(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        if subscription.status == CANCELED:
            raise StateConflictError("Canceled subscriptions cannot be paused")
        if subscription.paused_at is not None:
            raise StateConflictError("Subscription is already paused")
        subscription.paused_at = now or datetime.utcnow()
        return subscription

    def resume(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        if subscription.paused_at is None:
            raise StateConflictError("Subscription is not paused")
        subscription.paused_at = None
        return subscription

    def cancel(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        if subscription.status == CANCELED:
            raise StateConflictError("Subscription is already canceled")
        now = now or datetime.utcnow()
        subscription.status = CANCELED
        subscription.canceled_at = now
        subscription.paused_at = None
        self._skip_pending_retries(subscription, now)
        logger.info(f"Subscription {subscription.id} canceled by operator")
        return subscription

    def _skip_pending_retries(self, subscription: Subscription, now: datetime) -> None:
        pending = (
            self.db.query(RetrySchedule)
            .filter(
                RetrySchedule.subscription_id == subscription.id,
                RetrySchedule.status == "pending",
            )
            .all()
        )
        for entry in pending:
            entry.status = "skipped"
            entry.executed_at = now
