"""
Billing analytics.

Read-only aggregation over Transaction, Subscription, RetrySchedule and
DeclineInsight rows. Every figure is recomputed from source rows on each call.
Percentages are rounded to 2 decimals and are 0 when there is nothing to
divide by.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from billing_engine.core.config import BillingConfig
from billing_engine.core.exceptions import ValidationError
from billing_engine.models import DeclineInsight, RetrySchedule, Subscription, Transaction
from billing_engine.services.card_utils import brand_from_bin
from billing_engine.services.insights import retry_stage_for
from billing_engine.services.lifecycle import ACTIVE

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30
TOP_DECLINE_REASONS = 10


def percentage(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def parse_retry_stage(stage: str) -> int:
    """'initial' -> 0, 'retry_2' -> 2."""
    if stage == "initial":
        return 0
    prefix, _, number = stage.partition("_")
    if prefix != "retry" or not number.isdigit() or int(number) < 1:
        raise ValidationError(f"Invalid retry stage: {stage}")
    return int(number)


@dataclass
class AnalyticsFilter:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None
    response_code: Optional[str] = None
    retry_stage: Optional[str] = None
    card_brand: Optional[str] = None

    def with_default_period(self, now: Optional[datetime] = None) -> "AnalyticsFilter":
        """Fill a missing date range with the last 30 days."""
        now = now or datetime.utcnow()
        return AnalyticsFilter(
            start_date=self.start_date or now - timedelta(days=DEFAULT_PERIOD_DAYS),
            end_date=self.end_date or now,
            status=self.status,
            response_code=self.response_code,
            retry_stage=self.retry_stage,
            card_brand=self.card_brand,
        )

    def replace(self, **changes) -> "AnalyticsFilter":
        values = {**self.__dict__, **changes}
        return AnalyticsFilter(**values)


class BillingAnalytics:
    """Approval-rate dashboard figures."""

    def __init__(self, db: Session, config: BillingConfig):
        self.db = db
        self.config = config

    def _transactions(self, f: AnalyticsFilter) -> List[Transaction]:
        query = self.db.query(Transaction)
        if f.start_date:
            query = query.filter(Transaction.created_at >= f.start_date)
        if f.end_date:
            query = query.filter(Transaction.created_at <= f.end_date)
        if f.status:
            query = query.filter(Transaction.status == f.status)
        if f.response_code:
            query = query.filter(Transaction.response_code == f.response_code)
        if f.retry_stage:
            query = query.filter(Transaction.retry_attempt == parse_retry_stage(f.retry_stage))
        rows = query.order_by(Transaction.created_at).all()

        if f.card_brand:
            brand = f.card_brand.lower()
            rows = [t for t in rows if brand_from_bin(t.issuer_bin) == brand]
        return rows

    def approval_rate(self, f: Optional[AnalyticsFilter] = None) -> float:
        transactions = self._transactions(f or AnalyticsFilter())
        approved = sum(1 for t in transactions if t.status == "approved")
        return percentage(approved, len(transactions))

    def decline_distribution(self, f: Optional[AnalyticsFilter] = None) -> List[Dict[str, Any]]:
        """Declines grouped by (response_code, response_text), most frequent first."""
        declined = self._transactions((f or AnalyticsFilter()).replace(status="declined"))

        groups: Dict[tuple, Dict[str, Any]] = {}
        for t in declined:
            key = (t.response_code, t.response_text)
            if key not in groups:
                groups[key] = {
                    "code": t.response_code,
                    "response_code": t.response_code,
                    "response_text": t.response_text,
                    "count": 0,
                }
            groups[key]["count"] += 1

        total = len(declined)
        results = [{**g, "pct": percentage(g["count"], total)} for g in groups.values()]
        results.sort(key=lambda g: g["count"], reverse=True)
        return results

    def retry_success_rates(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Dict[str, Any]]:
        """Success rate for each retry attempt from 1 to max_retries."""
        rates = {
            f"retry_{n}": {"total": 0, "successful": 0, "rate": 0.0}
            for n in range(1, self.config.max_retries + 1)
        }
        for t in self._transactions(f or AnalyticsFilter()):
            bucket = rates.get(f"retry_{t.retry_attempt}") if t.retry_attempt > 0 else None
            if bucket is None:
                continue
            bucket["total"] += 1
            if t.status == "approved":
                bucket["successful"] += 1

        for bucket in rates.values():
            bucket["rate"] = percentage(bucket["successful"], bucket["total"])
        return rates

    def card_brand_performance(self, f: Optional[AnalyticsFilter] = None) -> List[Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for t in self._transactions(f or AnalyticsFilter()):
            brand = brand_from_bin(t.issuer_bin)
            entry = stats.setdefault(
                brand,
                {"brand": brand, "total_transactions": 0, "approved_transactions": 0,
                 "declined_transactions": 0, "revenue": 0},
            )
            entry["total_transactions"] += 1
            if t.status == "approved":
                entry["approved_transactions"] += 1
                entry["revenue"] += t.amount or 0
            else:
                entry["declined_transactions"] += 1

        results = [
            {**s, "approval_rate": percentage(s["approved_transactions"], s["total_transactions"])}
            for s in stats.values()
        ]
        results.sort(key=lambda s: s["total_transactions"], reverse=True)
        return results

    def time_series(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Approval rates by hour of day (0-23) and by calendar day."""
        hourly = [{"hour": h, "total": 0, "approved": 0, "approval_rate": 0.0} for h in range(24)]
        daily: Dict[str, Dict[str, Any]] = {}

        for t in self._transactions(f or AnalyticsFilter()):
            approved = t.status == "approved"
            hour = hourly[t.created_at.hour]
            hour["total"] += 1

            day_key = t.created_at.date().isoformat()
            day = daily.setdefault(day_key, {"date": day_key, "total": 0, "approved": 0, "revenue": 0})
            day["total"] += 1

            if approved:
                hour["approved"] += 1
                day["approved"] += 1
                day["revenue"] += t.amount or 0

        for hour in hourly:
            hour["approval_rate"] = percentage(hour["approved"], hour["total"])
        days = [
            {**d, "approval_rate": percentage(d["approved"], d["total"])}
            for _, d in sorted(daily.items())
        ]
        return {"hourly": hourly, "daily": days}

    def descriptor_performance(self, f: Optional[AnalyticsFilter] = None) -> List[Dict[str, Any]]:
        stats: Dict[str, Dict[str, int]] = {}
        for t in self._transactions(f or AnalyticsFilter()):
            entry = stats.setdefault(t.descriptor or "Unknown", {"total": 0, "approved": 0, "retry_sum": 0})
            entry["total"] += 1
            entry["retry_sum"] += t.retry_attempt or 0
            if t.status == "approved":
                entry["approved"] += 1

        results = [
            {
                "descriptor": descriptor,
                "total_transactions": s["total"],
                "approved_transactions": s["approved"],
                "approval_rate": percentage(s["approved"], s["total"]),
                "avg_retry_attempt": round(s["retry_sum"] / s["total"], 2) if s["total"] else 0.0,
            }
            for descriptor, s in stats.items()
        ]
        results.sort(key=lambda s: s["total_transactions"], reverse=True)
        return results

    def revenue(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Any]:
        """Collected revenue in the period plus run-rate figures from active subscriptions."""
        approved = self._transactions((f or AnalyticsFilter()).replace(status="approved"))
        total = sum(t.amount or 0 for t in approved)

        active = self.db.query(Subscription).filter(Subscription.status == ACTIVE).all()
        mrr = sum(s.amount for s in active if s.interval == "monthly")
        arr = sum(s.amount for s in active if s.interval == "yearly")

        return {
            "total_revenue": total,
            "mrr": mrr,
            "arr": arr,
            "average_transaction": round(total / len(approved)) if approved else 0,
            "transaction_count": len(approved),
            "active_subscriptions": len(active),
        }

    def retry_schedule_summary(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Any]:
        f = f or AnalyticsFilter()
        query = self.db.query(RetrySchedule)
        if f.start_date:
            query = query.filter(RetrySchedule.created_at >= f.start_date)
        if f.end_date:
            query = query.filter(RetrySchedule.created_at <= f.end_date)
        entries = query.all()

        by_attempt: Dict[str, int] = {}
        by_status: Dict[str, int] = {"pending": 0, "executed": 0, "skipped": 0}
        by_hour = [0] * 24
        first_delays: List[float] = []
        for e in entries:
            key = f"retry_{e.retry_attempt}"
            by_attempt[key] = by_attempt.get(key, 0) + 1
            by_status[e.status] = by_status.get(e.status, 0) + 1
            by_hour[e.scheduled_at.hour] += 1
            if e.retry_attempt == 1 and e.created_at:
                first_delays.append((e.scheduled_at - e.created_at).total_seconds() / 3600)

        return {
            "total_retries": len(entries),
            "pending_retries": by_status.get("pending", 0),
            "by_attempt": by_attempt,
            "by_status": by_status,
            "timing": {
                "avg_hours_to_first_retry": (
                    round(sum(first_delays) / len(first_delays), 2) if first_delays else 0.0
                ),
                "scheduled_by_hour": by_hour,
            },
        }

    def decline_insight_trend(self, f: Optional[AnalyticsFilter] = None) -> List[Dict[str, Any]]:
        """DeclineInsight counters summed per day."""
        f = f or AnalyticsFilter()
        query = self.db.query(DeclineInsight)
        if f.start_date:
            query = query.filter(DeclineInsight.date >= f.start_date.date())
        if f.end_date:
            query = query.filter(DeclineInsight.date <= f.end_date.date())
        if f.response_code:
            query = query.filter(DeclineInsight.response_code == f.response_code)
        if f.card_brand:
            query = query.filter(DeclineInsight.card_brand == f.card_brand.lower())
        if f.retry_stage:
            query = query.filter(DeclineInsight.retry_stage == retry_stage_for(parse_retry_stage(f.retry_stage)))

        days: Dict[str, Dict[str, Any]] = {}
        for row in query.order_by(DeclineInsight.date).all():
            key = row.date.isoformat()
            day = days.setdefault(key, {"date": key, "total": 0, "by_code": {}})
            day["total"] += row.decline_count
            day["by_code"][row.response_code] = day["by_code"].get(row.response_code, 0) + row.decline_count
        return list(days.values())

    def decline_recommendations(
        self,
        distribution: List[Dict[str, Any]],
        brands: List[Dict[str, Any]],
    ) -> List[str]:
        by_code = {d["response_code"]: d for d in distribution}
        recommendations = []
        if by_code.get("05", {}).get("pct", 0) > 20:
            recommendations.append(
                "High Do Not Honor share: vary the descriptor on retries to avoid issuer soft blocks"
            )
        if by_code.get("51", {}).get("pct", 0) > 15:
            recommendations.append(
                "High insufficient funds share: spread retries across different times of day"
            )
        if by_code.get("54", {}).get("pct", 0) > 5:
            recommendations.append("Expired card declines present: enable the automatic card updater")
        visa = next((b for b in brands if b["brand"] == "visa"), None)
        if visa and visa["approval_rate"] < 90:
            recommendations.append("Visa approval rate below 90%: consider network tokenization")
        return recommendations

    def retry_recommendations(self, rates: Dict[str, Dict[str, Any]], timing: Dict[str, Any]) -> List[str]:
        recommendations = []
        first = rates.get("retry_1")
        last = rates.get(f"retry_{self.config.max_retries}")
        if first and first["total"] and first["rate"] < 60:
            recommendations.append("First retry recovers under 60%: revisit the initial backoff")
        if last and last["total"] and last["rate"] < 30:
            recommendations.append("Final retry recovers under 30%: review the final descriptor")
        if timing["avg_hours_to_first_retry"] > 24:
            recommendations.append("First retry waits over 24h on average: consider a shorter initial delay")
        return recommendations

    def decline_insights(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Any]:
        f = (f or AnalyticsFilter()).with_default_period()
        distribution = self.decline_distribution(f)
        brands = self.card_brand_performance(f)
        return {
            "decline_distribution": distribution,
            "card_brand_performance": [b for b in brands if b["declined_transactions"] > 0],
            "descriptor_performance": self.descriptor_performance(f),
            "historical_trends": self.decline_insight_trend(f),
            "recommendations": self.decline_recommendations(distribution, brands),
        }

    def retry_analytics(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Any]:
        f = (f or AnalyticsFilter()).with_default_period()
        rates = self.retry_success_rates(f)
        schedule = self.retry_schedule_summary(f)
        return {
            "success_rates": rates,
            "schedule": schedule,
            "recommendations": self.retry_recommendations(rates, schedule["timing"]),
        }

    def dashboard(self, f: Optional[AnalyticsFilter] = None) -> Dict[str, Any]:
        f = (f or AnalyticsFilter()).with_default_period()
        revenue = self.revenue(f)
        logger.debug(f"Building dashboard for {f.start_date} - {f.end_date}")
        return {
            "period": {"start_date": f.start_date.isoformat(), "end_date": f.end_date.isoformat()},
            "kpis": {
                "approval_rate": self.approval_rate(f),
                "mrr": revenue["mrr"],
                "arr": revenue["arr"],
                "total_revenue": revenue["total_revenue"],
                "average_transaction": revenue["average_transaction"],
                "active_subscriptions": revenue["active_subscriptions"],
                "transaction_count": revenue["transaction_count"],
            },
            "decline_insights": {
                "distribution": self.decline_distribution(f)[:TOP_DECLINE_REASONS],
                "retry_success_rates": self.retry_success_rates(f),
            },
            "performance": {
                "by_card_brand": self.card_brand_performance(f),
                "by_descriptor": self.descriptor_performance(f),
                "by_time": self.time_series(f),
            },
            "retries": self.retry_schedule_summary(f),
        }
