"""
Append-only subscription history.

Rows are written inside the transaction of the transition they describe and
are never updated or deleted.
"""

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.logging import log_audit_event
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.mappers import history_from_row
from urbain.transit.subscriptions.models import (
    HistoryEvent,
    HistoryEventType,
    SubscriptionStatus,
)


class HistoryLedger:
    """Write-once ledger of subscription transitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    def record(
        self,
        session: AsyncSession,
        subscription_id: str,
        old_status: SubscriptionStatus | None,
        new_status: SubscriptionStatus,
        event_type: HistoryEventType,
        timestamp: datetime,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> None:
        """Stage a ledger row in the caller's transaction."""
        repository.add_history_row(
            session,
            subscription_id=subscription_id,
            old_status=old_status,
            new_status=new_status,
            event_type=event_type,
            timestamp=timestamp,
            metadata=metadata,
        )
        log_audit_event(
            action=f"subscription.{event_type.value.lower()}",
            category="subscription",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
        )

    async def list_for_subscription(self, subscription_id: str) -> list[HistoryEvent]:
        async with self.session_factory() as session:
            rows = await repository.list_history_rows(session, subscription_id)
        return [history_from_row(row) for row in rows]

    async def list_between(self, start: datetime, end: datetime) -> list[HistoryEvent]:
        async with self.session_factory() as session:
            rows = await repository.list_history_rows_between(session, start, end)
        return [history_from_row(row) for row in rows]

    async def count_by_type(self) -> dict[str, int]:
        async with self.session_factory() as session:
            return await repository.count_history_by_type(session)


__all__ = ["HistoryLedger"]
