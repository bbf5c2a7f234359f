"""
Billing sweep and recurring task runner.

A sweep selects due subscriptions, claims each one before touching it so
overlapping sweeps (another worker, a slow previous run) never process the
same subscription twice, and renews or expires them through a bounded pool.
One subscription's failure never aborts the sweep.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import date, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.settings import SchedulerSettings, SubscriptionSettings, settings
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.clock import Clock, FrozenClock, SystemClock
from urbain.transit.subscriptions.exceptions import (
    IllegalStateTransitionError,
    PaymentDeclinedError,
    TransientGatewayError,
)
from urbain.transit.subscriptions.lifecycle import SubscriptionLifecycle
from urbain.transit.subscriptions.metrics import SubscriptionMetrics, get_subscription_metrics
from urbain.transit.subscriptions.schemas import SweepReport

logger = structlog.get_logger(__name__)

RENEWED = "renewed"
EXPIRED = "expired"


class BillingScheduler:
    """Periodic renewal and expiry sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: SubscriptionLifecycle,
        config: SchedulerSettings | None = None,
        subscription_config: SubscriptionSettings | None = None,
        clock: Clock | None = None,
        metrics: SubscriptionMetrics | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.config = config or settings.scheduler
        self.subscription_config = subscription_config or settings.subscriptions
        self.clock = clock or SystemClock()
        self.metrics = metrics or get_subscription_metrics()

    def grace_deadline(self, renewal_failed_at: date) -> date:
        return renewal_failed_at + timedelta(days=self.subscription_config.grace_period_days)

    async def run_sweep(self) -> SweepReport:
        """Renew or expire every due subscription once."""
        started = time.monotonic()
        today = self.clock.today()

        async with self.session_factory() as session:
            due_ids = await repository.select_due_subscription_ids(session, today)
            lapsed_ids = await repository.select_lapsed_subscription_ids(session, today)

        report = SweepReport(due=len(due_ids) + len(lapsed_ids))
        semaphore = asyncio.Semaphore(self.config.max_workers)

        def record_error(subscription_id: str, event: str, exc: Exception) -> None:
            report.errors += 1
            report.error_details.setdefault(subscription_id, str(exc))
            logger.error(event, subscription_id=subscription_id, error=str(exc), exc_info=True)

        async def process(subscription_id: str, lapsed: bool) -> None:
            async with semaphore:
                try:
                    claimed = await self._claim(subscription_id)
                except Exception as exc:
                    record_error(subscription_id, "sweep.claim_failed", exc)
                    return
                if not claimed:
                    report.skipped += 1
                    logger.debug("sweep.already_claimed", subscription_id=subscription_id)
                    return
                try:
                    if lapsed:
                        await self.lifecycle.expire(subscription_id, "End date passed")
                        outcome = EXPIRED
                    else:
                        outcome = await self._process_due(subscription_id, today)
                except PaymentDeclinedError as exc:
                    report.failed += 1
                    logger.warning(
                        "sweep.renewal_declined",
                        subscription_id=subscription_id,
                        reason=exc.failure_reason,
                    )
                except IllegalStateTransitionError as exc:
                    # Moved on (paused, cancelled) since selection
                    report.skipped += 1
                    logger.info(
                        "sweep.state_changed", subscription_id=subscription_id, error=exc.message
                    )
                except TransientGatewayError as exc:
                    # Outcome unknown; the next sweep picks it up again
                    report.skipped += 1
                    logger.warning(
                        "sweep.renewal_in_flight",
                        subscription_id=subscription_id,
                        error=exc.message,
                    )
                except Exception as exc:
                    record_error(subscription_id, "sweep.item_failed", exc)
                else:
                    if outcome == RENEWED:
                        report.renewed += 1
                    else:
                        report.expired += 1
                finally:
                    try:
                        await self._release(subscription_id)
                    except Exception as exc:
                        # Claim expires after claim_ttl_seconds
                        record_error(subscription_id, "sweep.release_failed", exc)

        await asyncio.gather(
            *(process(sid, False) for sid in due_ids),
            *(process(sid, True) for sid in lapsed_ids),
        )

        duration = time.monotonic() - started
        self.metrics.record_sweep(duration)
        logger.info(
            "sweep.completed",
            today=today.isoformat(),
            due=report.due,
            renewed=report.renewed,
            failed=report.failed,
            expired=report.expired,
            skipped=report.skipped,
            errors=report.errors,
            duration_seconds=round(duration, 3),
        )
        return report

    async def _process_due(self, subscription_id: str, today: date) -> str:
        snapshot = await self.lifecycle.get(subscription_id)
        if snapshot.renewal_failed_at and self.grace_deadline(snapshot.renewal_failed_at) <= today:
            await self.lifecycle.expire(subscription_id, "Grace period elapsed")
            return EXPIRED
        await self.lifecycle.renew(subscription_id)
        return RENEWED

    async def _claim(self, subscription_id: str) -> bool:
        now = self.clock.now()
        stale_before = now - timedelta(seconds=self.config.claim_ttl_seconds)
        async with self.session_factory() as session:
            claimed = await repository.claim_subscription(
                session, subscription_id, now=now, stale_before=stale_before
            )
            await session.commit()
        return claimed

    async def _release(self, subscription_id: str) -> None:
        async with self.session_factory() as session:
            await repository.release_claim(session, subscription_id)
            await session.commit()

    async def cleanup_abandoned_pending(self) -> int:
        """Cancel PENDING_PAYMENT rows older than ``pending_cleanup_days``."""
        cutoff = self.clock.now() - timedelta(days=self.subscription_config.pending_cleanup_days)
        async with self.session_factory() as session:
            ids = await repository.select_pending_subscription_ids(session, created_before=cutoff)

        cancelled = 0
        for subscription_id in ids:
            try:
                await self.lifecycle.auto_cancel_abandoned(subscription_id)
            except Exception as exc:
                logger.error(
                    "cleanup.item_failed",
                    subscription_id=subscription_id,
                    error=str(exc),
                    exc_info=True,
                )
            else:
                cancelled += 1

        if ids:
            logger.info("cleanup.completed", candidates=len(ids), cancelled=cancelled)
        return cancelled


class RecurringTaskRunner:
    """
    Run an async job on a fixed interval for the life of the process.

    ``stop()`` lets a run in progress finish before returning, so a charge
    started by the job is never abandoned mid-flight.
    """

    def __init__(
        self,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        name: str = "recurring-task",
        clock: Clock | None = None,
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.job = job
        self.name = name
        self.clock = clock or SystemClock()
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self.last_run_at = None
        self.last_result: Any = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        """Run the job now; errors are logged and counted, never raised."""
        self.last_run_at = self.clock.now()
        self.runs += 1
        try:
            self.last_result = await self.job()
        except Exception as exc:
            self.failures += 1
            self.last_result = None
            logger.error("runner.job_failed", runner=self.name, error=str(exc), exc_info=True)
            return None
        return self.last_result

    async def _loop(self) -> None:
        if not self.run_immediately:
            if await self._wait_for_stop(self.interval_seconds):
                return
        while not self._stop_event.is_set():
            await self.run_once()
            if await self._wait_for_stop(self.interval_seconds):
                return

    async def _wait_for_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("runner.started", runner=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("runner.stopped", runner=self.name, runs=self.runs)


__all__ = [
    "BillingScheduler",
    "Clock",
    "FrozenClock",
    "RecurringTaskRunner",
    "SystemClock",
]
