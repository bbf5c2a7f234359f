"""create_transit_subscription_tables

Revision ID: 7c1e4a2b9d10
Revises:
Create Date: 2024-01-01 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "7c1e4a2b9d10"
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUSES = ("PENDING_PAYMENT", "ACTIVE", "PAUSED", "CANCELLED", "EXPIRED")
PAYMENT_METHODS = ("CARD", "MOBILE_MONEY", "WALLET")


def _enum(name: str, *values: str) -> sa.Enum:
    # Stored as VARCHAR + CHECK, matching native_enum=False on the models
    return sa.Enum(*values, name=name, native_enum=False, length=32)


def upgrade() -> None:
    """Create plans, subscriptions, payments and the subscription history ledger."""

    op.create_table(
        "transit_plans",
        sa.Column("plan_id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transit_plans_active", "transit_plans", ["is_active"])

    op.create_table(
        "transit_subscriptions",
        sa.Column("subscription_id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "plan_id", sa.String(36), sa.ForeignKey("transit_plans.plan_id"), nullable=False
        ),
        sa.Column("status", _enum("subscriptionstatus", *SUBSCRIPTION_STATUSES), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("payment_method", _enum("paymentmethod", *PAYMENT_METHODS), nullable=False),
        sa.Column("card_token", sa.String(128), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("qr_code_data", sa.Text(), nullable=True),
        sa.Column("renewal_failed_at", sa.Date(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transit_subscriptions_user", "transit_subscriptions", ["user_id"])
    op.create_index(
        "ix_transit_subscriptions_user_plan_status",
        "transit_subscriptions",
        ["user_id", "plan_id", "status"],
    )
    op.create_index(
        "ix_transit_subscriptions_due",
        "transit_subscriptions",
        ["status", "auto_renew", "next_billing_date"],
    )
    op.create_index(
        "ix_transit_subscriptions_deleted_at", "transit_subscriptions", ["deleted_at"]
    )

    op.create_table(
        "transit_payments",
        sa.Column("payment_id", sa.String(36), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(36),
            sa.ForeignKey("transit_subscriptions.subscription_id"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status", _enum("paymentstatus", "PENDING", "SUCCEEDED", "FAILED"), nullable=False
        ),
        sa.Column("kind", _enum("paymentkind", "CHARGE", "REFUND"), nullable=False),
        sa.Column(
            "purpose", _enum("paymentpurpose", "INITIAL", "RENEWAL", "REFUND"), nullable=False
        ),
        sa.Column("method", _enum("paymentmethod", *PAYMENT_METHODS), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("gateway_key", sa.String(255), nullable=False),
        sa.Column("external_txn_id", sa.String(128), nullable=True),
        sa.Column(
            "refunded_payment_id",
            sa.String(36),
            sa.ForeignKey("transit_payments.payment_id"),
            nullable=True,
        ),
        sa.Column("refunded_external_txn_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_transient", sa.Boolean(), nullable=False),
        sa.Column("billing_cycle_start", sa.Date(), nullable=True),
        sa.Column("card_token", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_transit_payments_subscription", "transit_payments", ["subscription_id"])
    op.create_index("ix_transit_payments_status", "transit_payments", ["status"])
    op.create_index("ix_transit_payments_external_txn", "transit_payments", ["external_txn_id"])
    op.create_index("ix_transit_payments_refunded", "transit_payments", ["refunded_payment_id"])

    op.create_table(
        "transit_subscription_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(36), nullable=False, unique=True),
        sa.Column(
            "subscription_id",
            sa.String(36),
            sa.ForeignKey("transit_subscriptions.subscription_id"),
            nullable=False,
        ),
        sa.Column("old_status", _enum("subscriptionstatus", *SUBSCRIPTION_STATUSES), nullable=True),
        sa.Column(
            "new_status", _enum("subscriptionstatus", *SUBSCRIPTION_STATUSES), nullable=False
        ),
        sa.Column(
            "event_type",
            _enum(
                "historyeventtype",
                "CREATED",
                "ACTIVATED",
                "CREATION_FAILED",
                "RENEWED",
                "RENEWAL_FAILED",
                "PAUSED",
                "RESUMED",
                "CANCELLED",
                "EXPIRED",
                "AUTO_CANCELLED",
                "PAYMENT_METHOD_UPDATED",
            ),
            nullable=False,
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_transit_history_subscription", "transit_subscription_history", ["subscription_id"]
    )
    op.create_index("ix_transit_history_type", "transit_subscription_history", ["event_type"])
    op.create_index(
        "ix_transit_history_timestamp", "transit_subscription_history", ["timestamp"]
    )


def downgrade() -> None:
    """Drop the subscription billing tables."""
    op.drop_table("transit_subscription_history")
    op.drop_table("transit_payments")
    op.drop_table("transit_subscriptions")
    op.drop_table("transit_plans")
