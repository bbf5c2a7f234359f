"""
Subscription event types and event emission helpers.

Events are published after the owning transaction commits and are keyed by
``subscription_id``. Delivery is at-least-once, so consumers must be
idempotent.
"""

from decimal import Decimal
from typing import Any

import structlog

from urbain.transit.events import EventBus, EventPriority, get_event_bus

logger = structlog.get_logger(__name__)


class SubscriptionEvents:
    """Subscription event type constants."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PAYMENT_PROCESSED = "payment.processed"


async def _publish(
    event_bus: EventBus | None,
    event_type: str,
    subscription_id: str,
    payload: dict[str, Any],
    user_id: str | None = None,
    priority: EventPriority = EventPriority.NORMAL,
) -> None:
    bus = event_bus or get_event_bus()
    try:
        await bus.publish(
            event_type=event_type,
            payload={"subscription_id": subscription_id, **payload},
            metadata={"key": subscription_id, "user_id": user_id, "source": "subscriptions"},
            priority=priority,
        )
    except Exception as exc:
        # Publication never rolls back a committed transition
        logger.error(
            "event.publish_failed",
            event_type=event_type,
            subscription_id=subscription_id,
            error=str(exc),
        )
        return

    logger.debug("event.emitted", event_type=event_type, subscription_id=subscription_id)


async def emit_subscription_created(
    subscription_id: str,
    user_id: str,
    plan_id: str,
    amount: Decimal,
    currency: str,
    end_date: str,
    event_bus: EventBus | None = None,
) -> None:
    """Emit subscription created event (after activation)."""
    await _publish(
        event_bus,
        SubscriptionEvents.SUBSCRIPTION_CREATED,
        subscription_id,
        {
            "user_id": user_id,
            "plan_id": plan_id,
            "amount": str(amount),
            "currency": currency,
            "end_date": end_date,
        },
        user_id=user_id,
        priority=EventPriority.HIGH,
    )


async def emit_subscription_renewed(
    subscription_id: str,
    user_id: str,
    payment_id: str,
    amount: Decimal,
    new_end_date: str,
    event_bus: EventBus | None = None,
) -> None:
    """Emit subscription renewed event."""
    await _publish(
        event_bus,
        SubscriptionEvents.SUBSCRIPTION_RENEWED,
        subscription_id,
        {"payment_id": payment_id, "amount": str(amount), "new_end_date": new_end_date},
        user_id=user_id,
    )


async def emit_subscription_cancelled(
    subscription_id: str,
    user_id: str,
    reason: str | None,
    refund_payment_id: str | None = None,
    event_bus: EventBus | None = None,
) -> None:
    """Emit subscription cancelled event."""
    await _publish(
        event_bus,
        SubscriptionEvents.SUBSCRIPTION_CANCELLED,
        subscription_id,
        {"reason": reason, "refund_payment_id": refund_payment_id},
        user_id=user_id,
        priority=EventPriority.HIGH,
    )


async def emit_status_changed(
    event_type: str,
    subscription_id: str,
    user_id: str,
    old_status: str,
    new_status: str,
    event_bus: EventBus | None = None,
    **extra_data: Any,
) -> None:
    """Emit a paused/resumed/expired notification."""
    await _publish(
        event_bus,
        event_type,
        subscription_id,
        {"old_status": old_status, "new_status": new_status, **extra_data},
        user_id=user_id,
    )


async def emit_payment_processed(
    subscription_id: str,
    payment_id: str,
    status: str,
    kind: str,
    amount: Decimal,
    currency: str,
    failure_reason: str | None = None,
    event_bus: EventBus | None = None,
) -> None:
    """Emit payment processed event (one per finalized payment row)."""
    await _publish(
        event_bus,
        SubscriptionEvents.PAYMENT_PROCESSED,
        subscription_id,
        {
            "payment_id": payment_id,
            "status": status,
            "kind": kind,
            "amount": str(amount),
            "currency": currency,
            "failure_reason": failure_reason,
        },
    )


__all__ = [
    "SubscriptionEvents",
    "emit_payment_processed",
    "emit_status_changed",
    "emit_subscription_cancelled",
    "emit_subscription_created",
    "emit_subscription_renewed",
]
