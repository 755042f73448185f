"""
Database models package.

All SQLAlchemy models are exported from this module for easy imports.
"""
from billing_engine.models.customer import Customer, Plan
from billing_engine.models.subscription import Subscription
from billing_engine.models.transaction import Transaction
from billing_engine.models.retry_schedule import (
    RetrySchedule,
    DeclineInsight,
    ReconciliationItem,
)

__all__ = [
    "Customer",
    "Plan",
    "Subscription",
    "Transaction",
    "RetrySchedule",
    "DeclineInsight",
    "ReconciliationItem",
]
