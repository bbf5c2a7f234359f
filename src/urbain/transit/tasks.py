"""
Celery tasks for subscription billing.

Each task runs its coroutine in a fresh event loop with its own engine, since
async database connections cannot be shared across loops.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from urbain.transit.celery_app import celery_app
from urbain.transit.db import create_engine_for_url, create_session_factory
from urbain.transit.logging import setup_logging
from urbain.transit.settings import settings
from urbain.transit.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _run_with_service(job: Callable[[SubscriptionService], Awaitable[T]]) -> T:
    async def _runner() -> T:
        engine = create_engine_for_url(settings.database.url, echo=settings.database.echo)
        service = SubscriptionService(session_factory=create_session_factory(engine))
        try:
            return await job(service)
        finally:
            await service.shutdown()
            await engine.dispose()

    setup_logging()
    return asyncio.run(_runner())


@celery_app.task(name="subscriptions.run_renewal_sweep")
def run_renewal_sweep_task() -> dict[str, Any]:
    """Renew or expire every subscription due today."""
    report = _run_with_service(lambda service: service.run_billing_sweep())
    return report.model_dump()


@celery_app.task(name="subscriptions.reconcile_payments")
def reconcile_payments_task() -> dict[str, int]:
    """Resolve payments and subscriptions left pending by an interrupted process."""
    summary = _run_with_service(lambda service: service.startup(start_scheduler=False))
    logger.info("subscriptions.reconciled", **summary)
    return summary


@celery_app.task(name="subscriptions.cleanup_abandoned_pending")
def cleanup_abandoned_pending_task() -> dict[str, int]:
    cancelled = _run_with_service(lambda service: service.scheduler.cleanup_abandoned_pending())
    return {"cancelled": cancelled}


__all__ = [
    "cleanup_abandoned_pending_task",
    "reconcile_payments_task",
    "run_renewal_sweep_task",
]
