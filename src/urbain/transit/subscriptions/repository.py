"""
Data access functions for the subscription tables.

Every function takes the caller's ``AsyncSession`` and never commits; the
unit of work belongs to the component that opened the session.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from urbain.transit.subscriptions.models import (
    LIVE_STATUSES,
    HistoryEventType,
    PaymentKind,
    PaymentPurpose,
    PaymentStatus,
    PaymentTable,
    PlanTable,
    SubscriptionHistoryTable,
    SubscriptionStatus,
    SubscriptionTable,
)

# ==================== Plans ====================


async def get_plan_row(session: AsyncSession, plan_id: str) -> PlanTable | None:
    return await session.get(PlanTable, plan_id)


async def get_plan_row_by_code(session: AsyncSession, code: str) -> PlanTable | None:
    result = await session.execute(select(PlanTable).where(PlanTable.code == code))
    return result.scalar_one_or_none()


async def list_plan_rows(session: AsyncSession, active_only: bool = True) -> list[PlanTable]:
    stmt = select(PlanTable)
    if active_only:
        stmt = stmt.where(PlanTable.is_active.is_(True))
    result = await session.execute(stmt.order_by(PlanTable.price, PlanTable.code))
    return list(result.scalars().all())


# ==================== Subscriptions ====================


async def get_subscription_row(
    session: AsyncSession, subscription_id: str
) -> SubscriptionTable | None:
    return await session.get(SubscriptionTable, subscription_id)


async def find_live_subscription(
    session: AsyncSession, user_id: str, plan_id: str
) -> SubscriptionTable | None:
    """Return the user's live (pending, active or paused) subscription to a plan."""
    stmt = select(SubscriptionTable).where(
        and_(
            SubscriptionTable.user_id == user_id,
            SubscriptionTable.plan_id == plan_id,
            SubscriptionTable.status.in_(LIVE_STATUSES),
            SubscriptionTable.deleted_at.is_(None),
        )
    )
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def list_subscription_rows_for_user(
    session: AsyncSession, user_id: str, include_deleted: bool = False
) -> list[SubscriptionTable]:
    stmt = select(SubscriptionTable).where(SubscriptionTable.user_id == user_id)
    if not include_deleted:
        stmt = stmt.where(SubscriptionTable.deleted_at.is_(None))
    result = await session.execute(
        stmt.order_by(SubscriptionTable.created_at.desc(), SubscriptionTable.subscription_id)
    )
    return list(result.scalars().all())


async def select_due_subscription_ids(session: AsyncSession, today: date) -> list[str]:
    """ACTIVE, auto-renewing, non-deleted subscriptions billed on or before today."""
    stmt = (
        select(SubscriptionTable.subscription_id)
        .where(
            and_(
                SubscriptionTable.status == SubscriptionStatus.ACTIVE,
                SubscriptionTable.auto_renew.is_(True),
                SubscriptionTable.deleted_at.is_(None),
                SubscriptionTable.next_billing_date <= today,
            )
        )
        .order_by(SubscriptionTable.next_billing_date, SubscriptionTable.subscription_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def select_lapsed_subscription_ids(session: AsyncSession, today: date) -> list[str]:
    """ACTIVE subscriptions without auto-renew whose period ended before today."""
    stmt = select(SubscriptionTable.subscription_id).where(
        and_(
            SubscriptionTable.status == SubscriptionStatus.ACTIVE,
            SubscriptionTable.auto_renew.is_(False),
            SubscriptionTable.deleted_at.is_(None),
            SubscriptionTable.end_date < today,
        )
    )
    result = await session.execute(stmt.order_by(SubscriptionTable.end_date))
    return list(result.scalars().all())


async def select_pending_subscription_ids(
    session: AsyncSession, created_before: datetime | None = None
) -> list[str]:
    """PENDING_PAYMENT subscriptions that have not been closed out."""
    stmt = select(SubscriptionTable.subscription_id).where(
        and_(
            SubscriptionTable.status == SubscriptionStatus.PENDING_PAYMENT,
            SubscriptionTable.deleted_at.is_(None),
        )
    )
    if created_before is not None:
        stmt = stmt.where(SubscriptionTable.created_at < created_before)
    result = await session.execute(stmt.order_by(SubscriptionTable.created_at))
    return list(result.scalars().all())


async def claim_subscription(
    session: AsyncSession, subscription_id: str, now: datetime, stale_before: datetime
) -> bool:
    """Conditionally stamp ``claimed_at``; False when another sweep holds a fresh claim."""
    stmt = (
        update(SubscriptionTable)
        .where(
            and_(
                SubscriptionTable.subscription_id == subscription_id,
                or_(
                    SubscriptionTable.claimed_at.is_(None),
                    SubscriptionTable.claimed_at < stale_before,
                ),
            )
        )
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def release_claim(session: AsyncSession, subscription_id: str) -> None:
    stmt = (
        update(SubscriptionTable)
        .where(SubscriptionTable.subscription_id == subscription_id)
        .values(claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def count_subscriptions_by_status(session: AsyncSession) -> dict[str, int]:
    stmt = select(SubscriptionTable.status, func.count()).group_by(SubscriptionTable.status)
    result = await session.execute(stmt)
    return {status.value: count for status, count in result.all()}


# ==================== Payments ====================


async def get_payment_row(session: AsyncSession, payment_id: str) -> PaymentTable | None:
    return await session.get(PaymentTable, payment_id)


async def get_payment_row_by_key(
    session: AsyncSession, idempotency_key: str
) -> PaymentTable | None:
    result = await session.execute(
        select(PaymentTable).where(PaymentTable.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def list_payment_rows(session: AsyncSession, subscription_id: str) -> list[PaymentTable]:
    result = await session.execute(
        select(PaymentTable)
        .where(PaymentTable.subscription_id == subscription_id)
        .order_by(PaymentTable.created_at, PaymentTable.payment_id)
    )
    return list(result.scalars().all())


async def list_pending_payment_rows(
    session: AsyncSession, created_before: datetime | None = None
) -> list[PaymentTable]:
    stmt = select(PaymentTable).where(PaymentTable.status == PaymentStatus.PENDING)
    if created_before is not None:
        stmt = stmt.where(PaymentTable.created_at <= created_before)
    result = await session.execute(stmt.order_by(PaymentTable.created_at))
    return list(result.scalars().all())


async def list_refund_rows(session: AsyncSession, payment_id: str) -> list[PaymentTable]:
    """REFUND rows (any status) issued against a charge."""
    result = await session.execute(
        select(PaymentTable)
        .where(
            and_(
                PaymentTable.kind == PaymentKind.REFUND,
                PaymentTable.refunded_payment_id == payment_id,
            )
        )
        .order_by(PaymentTable.created_at)
    )
    return list(result.scalars().all())


async def last_successful_charge_row(
    session: AsyncSession, subscription_id: str
) -> PaymentTable | None:
    result = await session.execute(
        select(PaymentTable)
        .where(
            and_(
                PaymentTable.subscription_id == subscription_id,
                PaymentTable.kind == PaymentKind.CHARGE,
                PaymentTable.status == PaymentStatus.SUCCEEDED,
            )
        )
        .order_by(PaymentTable.created_at.desc(), PaymentTable.payment_id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_failed_renewals(
    session: AsyncSession, subscription_id: str, cycle_start: date
) -> int:
    """Number of FAILED renewal attempts recorded for one billing cycle."""
    result = await session.execute(
        select(func.count())
        .select_from(PaymentTable)
        .where(
            and_(
                PaymentTable.subscription_id == subscription_id,
                PaymentTable.purpose == PaymentPurpose.RENEWAL,
                PaymentTable.billing_cycle_start == cycle_start,
                PaymentTable.status == PaymentStatus.FAILED,
            )
        )
    )
    return int(result.scalar_one())


async def sum_succeeded_amount(session: AsyncSession, kind: PaymentKind) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(PaymentTable.amount), 0)).where(
            and_(PaymentTable.kind == kind, PaymentTable.status == PaymentStatus.SUCCEEDED)
        )
    )
    return Decimal(str(result.scalar_one())).quantize(Decimal("0.01"))


# ==================== History ====================


def add_history_row(
    session: AsyncSession,
    subscription_id: str,
    old_status: SubscriptionStatus | None,
    new_status: SubscriptionStatus,
    event_type: HistoryEventType,
    timestamp: datetime,
    metadata: dict[str, Any] | None = None,
) -> SubscriptionHistoryTable:
    row = SubscriptionHistoryTable(
        subscription_id=subscription_id,
        old_status=old_status,
        new_status=new_status,
        event_type=event_type,
        timestamp=timestamp,
        metadata_json=metadata or {},
    )
    session.add(row)
    return row


async def list_history_rows(
    session: AsyncSession, subscription_id: str
) -> list[SubscriptionHistoryTable]:
    result = await session.execute(
        select(SubscriptionHistoryTable)
        .where(SubscriptionHistoryTable.subscription_id == subscription_id)
        .order_by(SubscriptionHistoryTable.id)
    )
    return list(result.scalars().all())


async def list_history_rows_between(
    session: AsyncSession, start: datetime, end: datetime
) -> list[SubscriptionHistoryTable]:
    result = await session.execute(
        select(SubscriptionHistoryTable)
        .where(
            and_(
                SubscriptionHistoryTable.timestamp >= start,
                SubscriptionHistoryTable.timestamp <= end,
            )
        )
        .order_by(SubscriptionHistoryTable.id)
    )
    return list(result.scalars().all())


async def count_history_by_type(session: AsyncSession) -> dict[str, int]:
    stmt = select(SubscriptionHistoryTable.event_type, func.count()).group_by(
        SubscriptionHistoryTable.event_type
    )
    result = await session.execute(stmt)
    return {event_type.value: count for event_type, count in result.all()}
