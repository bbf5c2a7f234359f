"""
Celery application for the background billing jobs.

Workers and beat run the renewal sweep, payment reconciliation and the
abandoned-checkout cleanup on the cadence configured in settings.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from urbain.transit.settings import settings

celery_app = Celery(
    "urbain_transit",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["urbain.transit.tasks"],
)

celery_app.conf.update(
    task_routes={
        "subscriptions.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    # A sweep may wait on several gateway timeouts in a row
    task_time_limit=1800,
    task_soft_time_limit=1500,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the billing beat schedule."""
    from urbain.transit.tasks import (
        cleanup_abandoned_pending_task,
        reconcile_payments_task,
        run_renewal_sweep_task,
    )

    logger = structlog.get_logger(__name__)
    periodic_task_names: list[str] = []

    if settings.scheduler.enabled:
        sender.add_periodic_task(
            settings.scheduler.renewal_interval_seconds,
            run_renewal_sweep_task.s(),
            name="subscriptions-renewal-sweep",
        )
        periodic_task_names.append("subscriptions-renewal-sweep")

        # Abandoned checkouts only need a daily pass
        sender.add_periodic_task(
            86400.0,
            cleanup_abandoned_pending_task.s(),
            name="subscriptions-cleanup-abandoned-pending",
        )
        periodic_task_names.append("subscriptions-cleanup-abandoned-pending")

    # Resolve payments left PENDING by a worker that died mid-charge
    reconcile_payments_task.apply_async(countdown=5)

    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        backend=settings.celery.result_backend,
        queues=["default", "billing"],
        periodic_tasks=periodic_task_names,
    )


if __name__ == "__main__":
    # python -m urbain.transit.celery_app worker
    celery_app.start()
