"""Initial billing schema

Revision ID: 001_initial_billing
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_billing"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create customers table
    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_customers_email"), "customers", ["email"], unique=True)

    # Create plans table
    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("interval", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("paused_at", sa.DateTime(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("interval", sa.String(length=20), nullable=False),
        sa.Column("next_bill_at", sa.DateTime(), nullable=False),
        sa.Column("retries", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("vault_token", sa.String(length=255), nullable=True),
        sa.Column("card_last_four", sa.String(length=4), nullable=True),
        sa.Column("card_brand", sa.String(length=20), nullable=True),
        sa.Column("card_bin", sa.String(length=6), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("card_updated_at", sa.DateTime(), nullable=True),
        sa.Column("auto_card_updater_enabled", sa.Boolean(), nullable=False),
        sa.Column("network_token_enabled", sa.Boolean(), nullable=False),
        sa.Column("network_token", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscriptions_customer_id"), "subscriptions", ["customer_id"], unique=False)
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"], unique=False)
    op.create_index(op.f("ix_subscriptions_next_bill_at"), "subscriptions", ["next_bill_at"], unique=False)
    op.create_index(op.f("ix_subscriptions_vault_token"), "subscriptions", ["vault_token"], unique=False)

    # Create transactions table
    op.create_table(
        "transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=64), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("response_code", sa.String(length=10), nullable=True),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("auth_code", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("initiator", sa.String(length=20), nullable=False),
        sa.Column("recurring", sa.String(length=20), nullable=False),
        sa.Column("descriptor", sa.String(length=22), nullable=True),
        sa.Column("retry_attempt", sa.Integer(), nullable=False),
        sa.Column("decline_category", sa.String(length=50), nullable=True),
        sa.Column("issuer_bin", sa.String(length=6), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_transactions_order_id"), "transactions", ["order_id"], unique=True)
    op.create_index(op.f("ix_transactions_subscription_id"), "transactions", ["subscription_id"], unique=False)
    op.create_index(op.f("ix_transactions_customer_id"), "transactions", ["customer_id"], unique=False)
    op.create_index(op.f("ix_transactions_status"), "transactions", ["status"], unique=False)
    op.create_index(op.f("ix_transactions_response_code"), "transactions", ["response_code"], unique=False)
    op.create_index(op.f("ix_transactions_retry_attempt"), "transactions", ["retry_attempt"], unique=False)
    op.create_index(op.f("ix_transactions_created_at"), "transactions", ["created_at"], unique=False)

    # Create retry_schedule table
    op.create_table(
        "retry_schedule",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("retry_attempt", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("descriptor_suffix", sa.String(length=22), nullable=False),
        sa.Column("executed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_retry_schedule_subscription_id"), "retry_schedule", ["subscription_id"], unique=False)
    op.create_index(op.f("ix_retry_schedule_scheduled_at"), "retry_schedule", ["scheduled_at"], unique=False)
    op.create_index(op.f("ix_retry_schedule_status"), "retry_schedule", ["status"], unique=False)
    op.create_index(op.f("ix_retry_schedule_created_at"), "retry_schedule", ["created_at"], unique=False)
    # At most one pending retry per subscription
    op.create_index(
        "uq_retry_schedule_one_pending",
        "retry_schedule",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Create decline_insights table
    op.create_table(
        "decline_insights",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("response_code", sa.String(length=10), nullable=False),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("card_brand", sa.String(length=20), nullable=False),
        sa.Column("retry_stage", sa.String(length=20), nullable=False),
        sa.Column("decline_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "date", "response_code", "card_brand", "retry_stage", name="uq_decline_insight_bucket"
        ),
    )
    op.create_index(op.f("ix_decline_insights_date"), "decline_insights", ["date"], unique=False)

    # Create reconciliation_items table
    op.create_table(
        "reconciliation_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("resolution", sa.String(length=20), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index(
        op.f("ix_reconciliation_items_subscription_id"), "reconciliation_items", ["subscription_id"], unique=False
    )
    op.create_index(op.f("ix_reconciliation_items_status"), "reconciliation_items", ["status"], unique=False)


def downgrade() -> None:
    op.drop_table("reconciliation_items")
    op.drop_table("decline_insights")
    op.drop_index("uq_retry_schedule_one_pending", table_name="retry_schedule")
    op.drop_table("retry_schedule")
    op.drop_table("transactions")
    op.drop_table("subscriptions")
    op.drop_table("plans")
    op.drop_index(op.f("ix_customers_email"), table_name="customers")
    op.drop_table("customers")
