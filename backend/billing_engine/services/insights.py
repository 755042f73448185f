"""
DeclineInsight counters.

The charge path only publishes a DeclineEvent; the counter row is written
later by the record_decline_insight Celery task. A slow or broken analytics
write can therefore never block or fail a charge.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.models import DeclineInsight

logger = logging.getLogger(__name__)


def retry_stage_for(retry_attempt: int) -> str:
    return "initial" if retry_attempt <= 0 else f"retry_{retry_attempt}"


@dataclass
class DeclineEvent:
    """A decline worth counting."""

    day: str  # ISO date
    response_code: str
    response_text: str
    card_brand: str
    retry_stage: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InsightPublisher(ABC):
    """Sink for decline events."""

    @abstractmethod
    def publish(self, event: DeclineEvent) -> None:
        pass


class CeleryInsightPublisher(InsightPublisher):
    """Enqueues events on the Celery broker. Broker failures are logged, not raised."""

    def publish(self, event: DeclineEvent) -> None:
        from billing_engine.tasks.billing_tasks import record_decline_insight

        try:
            record_decline_insight.delay(event.to_dict())
        except Exception as e:
            logger.warning(f"Could not enqueue decline insight {event.to_dict()}: {e}")


class NullInsightPublisher(InsightPublisher):
    def publish(self, event: DeclineEvent) -> None:
        logger.debug(f"Dropping decline insight {event.to_dict()}")


def record_decline_insight(
    db: Session,
    day: date,
    response_code: str,
    response_text: Optional[str],
    card_brand: Optional[str],
    retry_stage: str,
) -> DeclineInsight:
    """
    Increment the counter for one (day, code, brand, stage) bucket.

    Creates the row on first use. If a concurrent writer created it first the
    unique constraint fires and the increment is applied to that row instead.
    """
    brand = card_brand or "unknown"
    filters = dict(
        date=day,
        response_code=response_code,
        card_brand=brand,
        retry_stage=retry_stage,
    )

    insight = db.query(DeclineInsight).filter_by(**filters).with_for_update().first()
    if insight is None:
        insight = DeclineInsight(response_text=response_text, decline_count=1, **filters)
        db.add(insight)
        try:
            db.commit()
            return insight
        except IntegrityError:
            db.rollback()
            insight = db.query(DeclineInsight).filter_by(**filters).with_for_update().one()

    insight.decline_count = insight.decline_count + 1
    db.commit()
    return insight
