"""
Retry scheduler.

Decides whether a declined recurring charge is retried and, if so, when.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from billing_engine.core.config import BillingConfig
from billing_engine.services.decline_classifier import (
    DeclineClassification,
    MANUAL_INTERVENTION_CODES,
    is_no_retry_code,
    normalize_code,
)
from billing_engine.services.descriptor_policy import DescriptorPolicy

logger = logging.getLogger(__name__)

ACTION_RETRY = "retry"
ACTION_PAST_DUE = "past_due"
ACTION_CANCELED = "canceled"

_MANUAL_ACTIONS = frozenset({"customer_contact", "manual_review"})


@dataclass
class RetryDecision:
    """Outcome of the retry policy for one declined attempt."""

    action: str
    retry_attempt: Optional[int] = None
    retry_at: Optional[datetime] = None
    descriptor_suffix: str = ""
    reason: str = ""

    @property
    def will_retry(self) -> bool:
        return self.action == ACTION_RETRY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "retry_attempt": self.retry_attempt,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            "descriptor_suffix": self.descriptor_suffix,
            "reason": self.reason,
        }


class RetryScheduler:
    """Retry policy over a BillingConfig."""

    def __init__(self, config: BillingConfig, descriptor_policy: Optional[DescriptorPolicy] = None):
        self.config = config
        self.descriptor_policy = descriptor_policy or DescriptorPolicy(config)

    def should_retry(self, subscription, decline_code: Optional[str]) -> bool:
        """False once retries are exhausted or for codes that must never be retried."""
        if subscription.retries >= self.config.max_retries:
            return False
        if is_no_retry_code(decline_code):
            return False
        return True

    def backoff_for(self, attempt_number: int) -> timedelta:
        if attempt_number < 1:
            raise ValueError(f"Retry attempt numbers start at 1, got {attempt_number}")
        hours = self.config.backoff_hours
        index = min(attempt_number, len(hours)) - 1
        return timedelta(hours=hours[index])

    def next_retry_time(self, attempt_number: int, now: Optional[datetime] = None) -> datetime:
        """now + backoff_hours[attempt - 1], holding the last value past the list end."""
        return (now or datetime.utcnow()) + self.backoff_for(attempt_number)

    def decide(
        self,
        subscription,
        classification: DeclineClassification,
        decline_code: Optional[str],
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """
        Apply the retry policy to a decline.

        A retry needs both the scheduler's checks and the classifier's
        recommendation. Otherwise the subscription goes to past_due (card fix
        or exhausted retries) or canceled (manual intervention).
        """
        if self.should_retry(subscription, decline_code) and classification.retry_recommended:
            attempt = subscription.retries + 1
            return RetryDecision(
                action=ACTION_RETRY,
                retry_attempt=attempt,
                retry_at=self.next_retry_time(attempt, now),
                descriptor_suffix=self.descriptor_policy.suffix_for(
                    attempt, classification.category, subscription.card_brand
                ),
                reason=classification.action_required,
            )

        if (
            normalize_code(decline_code) in MANUAL_INTERVENTION_CODES
            or classification.action_required in _MANUAL_ACTIONS
        ):
            action = ACTION_CANCELED
        else:
            action = ACTION_PAST_DUE

        if subscription.retries >= self.config.max_retries:
            reason = "max_retries_reached"
        else:
            reason = classification.action_required

        logger.info(
            f"No retry for subscription {subscription.id}: code={decline_code} "
            f"retries={subscription.retries} -> {action} ({reason})"
        )
        return RetryDecision(action=action, reason=reason)
