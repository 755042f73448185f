"""
Unit tests for billing analytics.
"""
import uuid
from datetime import date, datetime, timedelta

import pytest

from billing_engine.core.exceptions import ValidationError
from billing_engine.models import DeclineInsight, RetrySchedule, Transaction
from billing_engine.services.analytics import (
    AnalyticsFilter,
    BillingAnalytics,
    parse_retry_stage,
    percentage,
)

T0 = datetime(2026, 3, 10, 9, 0, 0)


@pytest.fixture
def analytics(db, billing_config):
    return BillingAnalytics(db, billing_config)


@pytest.fixture
def add_txn(db, customer):
    def _add(status="approved", code="100", text="SUCCESS", issuer_bin="411111",
             retry_attempt=0, amount=1999, created_at=T0, descriptor="ECELONX Subscription"):
        txn = Transaction(
            order_id=f"MIT-{uuid.uuid4()}",
            customer_id=customer.id,
            status=status,
            response_code=code,
            response_text=text,
            amount=amount,
            initiator="merchant",
            recurring="subsequent",
            descriptor=descriptor,
            retry_attempt=retry_attempt,
            issuer_bin=issuer_bin,
            created_at=created_at,
        )
        db.add(txn)
        db.commit()
        return txn

    return _add


def test_percentage():
    assert percentage(0, 0) == 0.0
    assert percentage(2, 3) == 66.67
    assert percentage(1, 3) == 33.33
    assert percentage(3, 3) == 100.0


@pytest.mark.parametrize("stage,expected", [("initial", 0), ("retry_1", 1), ("retry_12", 12)])
def test_parse_retry_stage(stage, expected):
    assert parse_retry_stage(stage) == expected


@pytest.mark.parametrize("stage", ["retry_0", "retry_x", "final", "retry"])
def test_parse_retry_stage_rejects(stage):
    with pytest.raises(ValidationError):
        parse_retry_stage(stage)


class TestEmptyData:

    def test_all_rates_are_zero(self, analytics):
        assert analytics.approval_rate() == 0.0
        assert analytics.decline_distribution() == []
        assert analytics.card_brand_performance() == []
        assert analytics.retry_success_rates() == {
            "retry_1": {"total": 0, "successful": 0, "rate": 0.0},
            "retry_2": {"total": 0, "successful": 0, "rate": 0.0},
            "retry_3": {"total": 0, "successful": 0, "rate": 0.0},
        }
        assert analytics.revenue()["average_transaction"] == 0

    def test_dashboard_renders(self, analytics):
        data = analytics.dashboard()
        assert data["kpis"]["approval_rate"] == 0.0
        assert len(data["performance"]["by_time"]["hourly"]) == 24


class TestRates:

    def test_approval_rate(self, analytics, add_txn):
        for status in ("approved", "approved", "approved", "declined"):
            add_txn(status=status)
        assert analytics.approval_rate() == 75.0

    def test_decline_distribution(self, analytics, add_txn):
        add_txn(status="declined", code="51", text="Insufficient funds")
        add_txn(status="declined", code="51", text="Insufficient funds")
        add_txn(status="declined", code="05", text="Do Not Honor")
        add_txn(status="approved")
        add_txn(status="error", code=None, text="Payment gateway timed out")

        distribution = analytics.decline_distribution()

        assert distribution == [
            {"code": "51", "response_code": "51", "response_text": "Insufficient funds", "count": 2, "pct": 66.67},
            {"code": "05", "response_code": "05", "response_text": "Do Not Honor", "count": 1, "pct": 33.33},
        ]

    def test_decline_distribution_by_code(self, analytics, add_txn):
        add_txn(status="declined", code="05", text="Do Not Honor")
        add_txn(status="declined", code="05", text="Do Not Honor")
        add_txn(status="declined", code="51", text="Insufficient funds")

        distribution = analytics.decline_distribution()

        assert [(d["code"], d["count"], d["pct"]) for d in distribution] == [
            ("05", 2, 66.67),
            ("51", 1, 33.33),
        ]

    def test_retry_success_rates(self, analytics, add_txn):
        add_txn(retry_attempt=1, status="approved")
        add_txn(retry_attempt=1, status="declined", code="51")
        add_txn(retry_attempt=2, status="declined", code="51")
        add_txn(retry_attempt=0, status="declined", code="51")
        add_txn(retry_attempt=5, status="approved")

        rates = analytics.retry_success_rates()

        assert rates["retry_1"] == {"total": 2, "successful": 1, "rate": 50.0}
        assert rates["retry_2"] == {"total": 1, "successful": 0, "rate": 0.0}
        assert set(rates) == {"retry_1", "retry_2", "retry_3"}


class TestCardBrands:

    def test_brand_from_bin(self, analytics, add_txn):
        for issuer_bin in ("411111", "510510", "340000", "601111", "999999", None):
            add_txn(issuer_bin=issuer_bin)

        brands = {b["brand"]: b["total_transactions"] for b in analytics.card_brand_performance()}

        assert brands == {"visa": 1, "mastercard": 1, "amex": 1, "discover": 1, "other": 2}

    def test_brand_performance(self, analytics, add_txn):
        add_txn(issuer_bin="411111", amount=1000)
        add_txn(issuer_bin="411111", status="declined", code="05")

        visa = analytics.card_brand_performance()[0]

        assert visa == {
            "brand": "visa",
            "total_transactions": 2,
            "approved_transactions": 1,
            "declined_transactions": 1,
            "revenue": 1000,
            "approval_rate": 50.0,
        }

    def test_brand_filter(self, analytics, add_txn):
        add_txn(issuer_bin="411111")
        add_txn(issuer_bin="510510", status="declined", code="51")
        assert analytics.approval_rate(AnalyticsFilter(card_brand="Mastercard")) == 0.0
        assert analytics.approval_rate(AnalyticsFilter(card_brand="visa")) == 100.0


class TestFilters:

    def test_date_range(self, analytics, add_txn):
        add_txn(created_at=T0 - timedelta(days=40), status="declined", code="51")
        add_txn(created_at=T0)
        f = AnalyticsFilter(start_date=T0 - timedelta(days=30), end_date=T0 + timedelta(hours=1))
        assert analytics.approval_rate(f) == 100.0

    def test_retry_stage(self, analytics, add_txn):
        add_txn(retry_attempt=0)
        add_txn(retry_attempt=1, status="declined", code="51")
        assert analytics.approval_rate(AnalyticsFilter(retry_stage="retry_1")) == 0.0
        assert analytics.approval_rate(AnalyticsFilter(retry_stage="initial")) == 100.0

    def test_response_code(self, analytics, add_txn):
        add_txn(status="declined", code="51")
        add_txn(status="declined", code="05")
        distribution = analytics.decline_distribution(AnalyticsFilter(response_code="05"))
        assert [d["response_code"] for d in distribution] == ["05"]

    def test_default_period_is_thirty_days(self):
        now = datetime(2026, 3, 10)
        f = AnalyticsFilter().with_default_period(now)
        assert f.start_date == now - timedelta(days=30)
        assert f.end_date == now


class TestBreakdowns:

    def test_time_series(self, analytics, add_txn):
        add_txn(created_at=datetime(2026, 3, 9, 14, 5))
        add_txn(created_at=datetime(2026, 3, 10, 14, 30), status="declined", code="51")
        add_txn(created_at=datetime(2026, 3, 10, 3, 0))

        series = analytics.time_series()

        assert series["hourly"][14] == {"hour": 14, "total": 2, "approved": 1, "approval_rate": 50.0}
        assert series["hourly"][3]["approval_rate"] == 100.0
        assert [d["date"] for d in series["daily"]] == ["2026-03-09", "2026-03-10"]
        assert series["daily"][1]["revenue"] == 1999

    def test_descriptor_performance(self, analytics, add_txn):
        add_txn(descriptor="ECELONX Subscription")
        add_txn(descriptor="ECELONX Subscri *Renew", retry_attempt=3, status="declined", code="51")
        add_txn(descriptor="ECELONX Subscri *Renew", retry_attempt=2)

        renew = analytics.descriptor_performance()[0]

        assert renew["descriptor"] == "ECELONX Subscri *Renew"
        assert renew["approval_rate"] == 50.0
        assert renew["avg_retry_attempt"] == 2.5

    def test_revenue(self, analytics, add_txn, make_subscription):
        add_txn(amount=1999)
        add_txn(amount=1001)
        add_txn(amount=5000, status="declined", code="51")
        make_subscription(amount=1999)
        make_subscription(amount=19999, interval="yearly")
        make_subscription(amount=1999, status="canceled")

        revenue = analytics.revenue()

        assert revenue["total_revenue"] == 3000
        assert revenue["average_transaction"] == 1500
        assert revenue["mrr"] == 1999
        assert revenue["arr"] == 19999
        assert revenue["active_subscriptions"] == 2

    def test_retry_schedule_summary(self, db, analytics, make_subscription):
        sub = make_subscription()
        created = datetime(2026, 3, 10, 6, 0)
        db.add_all(
            [
                RetrySchedule(subscription_id=sub.id, retry_attempt=1, status="executed",
                              scheduled_at=created + timedelta(hours=12), created_at=created),
                RetrySchedule(subscription_id=sub.id, retry_attempt=2, status="pending",
                              scheduled_at=created + timedelta(hours=48), created_at=created + timedelta(hours=12)),
            ]
        )
        db.commit()

        summary = analytics.retry_schedule_summary()

        assert summary["total_retries"] == 2
        assert summary["pending_retries"] == 1
        assert summary["by_attempt"] == {"retry_1": 1, "retry_2": 1}
        assert summary["timing"]["avg_hours_to_first_retry"] == 12.0
        assert summary["timing"]["scheduled_by_hour"][18] == 1

    def test_decline_insight_trend(self, db, analytics):
        db.add_all(
            [
                DeclineInsight(date=date(2026, 3, 9), response_code="51", card_brand="visa",
                               retry_stage="initial", decline_count=3),
                DeclineInsight(date=date(2026, 3, 9), response_code="05", card_brand="visa",
                               retry_stage="retry_1", decline_count=1),
                DeclineInsight(date=date(2026, 3, 10), response_code="51", card_brand="amex",
                               retry_stage="initial", decline_count=2),
            ]
        )
        db.commit()

        trend = analytics.decline_insight_trend()
        assert trend == [
            {"date": "2026-03-09", "total": 4, "by_code": {"51": 3, "05": 1}},
            {"date": "2026-03-10", "total": 2, "by_code": {"51": 2}},
        ]

        visa_only = analytics.decline_insight_trend(AnalyticsFilter(card_brand="visa", retry_stage="retry_1"))
        assert visa_only == [{"date": "2026-03-09", "total": 1, "by_code": {"05": 1}}]


class TestViews:

    def test_decline_insights_recommendations(self, analytics, add_txn):
        add_txn(status="declined", code="05", text="Do Not Honor")
        add_txn(status="declined", code="54", text="Expired card")
        f = AnalyticsFilter(start_date=T0 - timedelta(days=1), end_date=T0 + timedelta(days=1))

        insights = analytics.decline_insights(f)

        assert any("descriptor" in r for r in insights["recommendations"])
        assert any("card updater" in r for r in insights["recommendations"])
        assert insights["card_brand_performance"][0]["brand"] == "visa"

    def test_retry_analytics(self, analytics, add_txn):
        add_txn(retry_attempt=1, status="declined", code="51")
        f = AnalyticsFilter(start_date=T0 - timedelta(days=1), end_date=T0 + timedelta(days=1))

        data = analytics.retry_analytics(f)

        assert data["success_rates"]["retry_1"]["total"] == 1
        assert data["recommendations"][0].startswith("First retry recovers under 60%")

    def test_dashboard_period(self, analytics, add_txn, make_subscription):
        add_txn()
        make_subscription()
        f = AnalyticsFilter(start_date=T0 - timedelta(days=1), end_date=T0 + timedelta(days=1))

        data = analytics.dashboard(f)

        assert data["period"]["start_date"] == "2026-03-09T09:00:00"
        assert data["kpis"]["approval_rate"] == 100.0
        assert data["kpis"]["mrr"] == 1999
        assert data["kpis"]["transaction_count"] == 1
        assert data["performance"]["by_card_brand"][0]["brand"] == "visa"
