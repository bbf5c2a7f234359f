"""unique_live_subscription_per_plan

Revision ID: 3f8d2c6a1b47
Revises: 7c1e4a2b9d10
Create Date: 2024-01-15 10:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "3f8d2c6a1b47"
down_revision = "7c1e4a2b9d10"
branch_labels = None
depends_on = None

LIVE_CLAUSE = "status IN ('PENDING_PAYMENT', 'ACTIVE', 'PAUSED') AND deleted_at IS NULL"


def upgrade() -> None:
    """Allow one pending, active or paused subscription per (user, plan)."""
    op.create_index(
        "uq_transit_subscriptions_live",
        "transit_subscriptions",
        ["user_id", "plan_id"],
        unique=True,
        sqlite_where=sa.text(LIVE_CLAUSE),
        postgresql_where=sa.text(LIVE_CLAUSE),
    )


def downgrade() -> None:
    op.drop_index("uq_transit_subscriptions_live", table_name="transit_subscriptions")
