"""
Global pytest configuration and fixtures for the transit billing tests.

Every test gets its own file-backed SQLite database so concurrent sessions
within one test see the same schema and data.
"""

import os
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

# Keep a developer's .env or DATABASE__URL from leaking into tests
os.environ.pop("DATABASE__URL", None)
os.environ.setdefault("ENVIRONMENT", "test")

from urbain.transit.db import create_all_tables_async, create_engine_for_url, create_session_factory  # noqa: E402
from urbain.transit.events import EventBus  # noqa: E402
from urbain.transit.settings import (  # noqa: E402
    QRSettings,
    SchedulerSettings,
    Settings,
    SubscriptionSettings,
)
from urbain.transit.subscriptions.clock import FrozenClock  # noqa: E402
from urbain.transit.subscriptions.gateway import MockPaymentGateway  # noqa: E402
from urbain.transit.subscriptions.metrics import SubscriptionMetrics  # noqa: E402
from urbain.transit.subscriptions.service import SubscriptionService  # noqa: E402

DECLINED_CARD = "tok_declined_0002"
GOOD_CARD = "tok_visa_4242"


def card_payment(card_token: str = GOOD_CARD, **overrides: Any) -> dict[str, Any]:
    """Payment details payload with a card valid well past the test dates."""
    payload: dict[str, Any] = {
        "card_token": card_token,
        "card_exp_month": 12,
        "card_exp_year": 2030,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        subscriptions=SubscriptionSettings(
            grace_period_days=3,
            gateway_timeout_seconds=0.2,
            max_transient_retries=2,
            pending_cleanup_days=7,
        ),
        scheduler=SchedulerSettings(enabled=False, max_workers=1, claim_ttl_seconds=900),
        qr=QRSettings(
            secret_key="test-qr-signing-secret-0123456789abcdef", issuer="urbain-transit-test"
        ),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(date(2024, 1, 1))


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(decline_tokens={DECLINED_CARD})


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def metrics() -> SubscriptionMetrics:
    return SubscriptionMetrics()


@pytest_asyncio.fixture
async def async_db_engine(tmp_path):
    """Fresh schema in a per-test SQLite file."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'transit.db'}")
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_db_engine):
    return create_session_factory(async_db_engine)


@pytest_asyncio.fixture
async def service(session_factory, gateway, test_settings, clock, event_bus, metrics):
    svc = SubscriptionService(
        session_factory=session_factory,
        gateway=gateway,
        config=test_settings,
        clock=clock,
        event_bus=event_bus,
        metrics=metrics,
    )
    yield svc
    await svc.shutdown()
    await event_bus.drain()


@pytest_asyncio.fixture
async def monthly_plan(service):
    return await service.create_plan(
        {
            "code": "monthly",
            "name": "Monthly Pass",
            "description": "Unlimited metro and bus rides",
            "features": ["metro", "bus"],
            "duration_days": 30,
            "price": Decimal("10.00"),
            "currency": "usd",
        }
    )


@pytest_asyncio.fixture
async def active_subscription(service, monthly_plan):
    return await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
