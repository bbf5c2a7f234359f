"""
Data mappers for the subscription domain.

Transforms database rows into the immutable value objects handed to callers.
Rows never leave the repository layer; everything above it works on these
snapshots.
"""

from datetime import UTC, datetime

from urbain.transit.subscriptions.models import (
    HistoryEvent,
    PaymentRecord,
    PaymentTable,
    Plan,
    PlanTable,
    SubscriptionHistoryTable,
    SubscriptionSnapshot,
    SubscriptionTable,
)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def mask_card_token(token: str | None) -> str | None:
    """Return the last four characters of a card token, or None."""
    if not token:
        return None
    return token[-4:]


def plan_from_row(row: PlanTable) -> Plan:
    """Convert a plan row to a Plan."""
    return Plan.model_validate(row)


def subscription_from_row(row: SubscriptionTable) -> SubscriptionSnapshot:
    """Convert a subscription row to a snapshot (card token masked)."""
    return SubscriptionSnapshot(
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        start_date=row.start_date,
        end_date=row.end_date,
        next_billing_date=row.next_billing_date,
        amount_paid=row.amount_paid,
        auto_renew=row.auto_renew,
        payment_method=row.payment_method,
        card_last4=mask_card_token(row.card_token),
        qr_code_data=row.qr_code_data,
        renewal_failed_at=row.renewal_failed_at,
        version=row.version,
        deleted_at=_aware(row.deleted_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def payment_from_row(row: PaymentTable) -> PaymentRecord:
    """Convert a payment row to a PaymentRecord."""
    return PaymentRecord(
        payment_id=row.payment_id,
        subscription_id=row.subscription_id,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        kind=row.kind,
        purpose=row.purpose,
        method=row.method,
        idempotency_key=row.idempotency_key,
        gateway_key=row.gateway_key,
        external_txn_id=row.external_txn_id,
        refunded_payment_id=row.refunded_payment_id,
        refunded_external_txn_id=row.refunded_external_txn_id,
        reason=row.reason,
        failure_reason=row.failure_reason,
        failure_transient=row.failure_transient,
        billing_cycle_start=row.billing_cycle_start,
        created_at=_aware(row.created_at),
        completed_at=_aware(row.completed_at),
    )


def history_from_row(row: SubscriptionHistoryTable) -> HistoryEvent:
    """Convert a ledger row to a HistoryEvent."""
    return HistoryEvent(
        event_id=row.event_id,
        subscription_id=row.subscription_id,
        old_status=row.old_status,
        new_status=row.new_status,
        event_type=row.event_type,
        timestamp=_aware(row.timestamp),
        metadata=dict(row.metadata_json or {}),
    )


__all__ = [
    "history_from_row",
    "mask_card_token",
    "payment_from_row",
    "plan_from_row",
    "subscription_from_row",
]
