"""
Plan catalog.

Plans are looked up by id or code. A plan referenced by subscriptions never
changes price or duration; retiring one only hides it from new purchases.
"""

from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.logging import log_audit_event
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.exceptions import DuplicatePlanError, PlanNotFoundError
from urbain.transit.subscriptions.mappers import plan_from_row
from urbain.transit.subscriptions.models import Plan, PlanTable
from urbain.transit.subscriptions.schemas import PlanCreateRequest
from urbain.transit.subscriptions.validation import parse_model

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """Read access to plan definitions plus the admin create/retire operations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_plan(self, plan_id: str) -> Plan:
        async with self.session_factory() as session:
            row = await repository.get_plan_row(session, plan_id)
        if row is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan_from_row(row)

    async def get_plan_by_code(self, code: str) -> Plan:
        async with self.session_factory() as session:
            row = await repository.get_plan_row_by_code(session, code.upper())
        if row is None:
            raise PlanNotFoundError(f"Plan with code {code} not found", code=code)
        return plan_from_row(row)

    async def get_purchasable_plan(self, plan_id: str) -> Plan:
        """Like ``get_plan`` but an inactive plan counts as missing."""
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFoundError(f"Plan {plan_id} is not available", plan_id=plan_id)
        return plan

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        async with self.session_factory() as session:
            rows = await repository.list_plan_rows(session, active_only=active_only)
        return [plan_from_row(row) for row in rows]

    async def create_plan(self, request: PlanCreateRequest | dict[str, Any]) -> Plan:
        """Create a plan; the code must be unique."""
        data = parse_model(PlanCreateRequest, request)

        async with self.session_factory() as session:
            if await repository.get_plan_row_by_code(session, data.code) is not None:
                raise DuplicatePlanError(f"Plan code {data.code} already exists", code=data.code)

            row = PlanTable(
                code=data.code,
                name=data.name,
                description=data.description,
                features=list(data.features),
                price=data.price,
                currency=data.currency,
                duration_days=data.duration_days,
                is_active=data.is_active,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicatePlanError(
                    f"Plan code {data.code} already exists", code=data.code
                ) from exc
            plan = plan_from_row(row)

        logger.info("plan.created", plan_id=plan.plan_id, code=plan.code, price=str(plan.price))
        log_audit_event(
            action="plan.created",
            category="catalog",
            resource_type="plan",
            resource_id=plan.plan_id,
            code=plan.code,
        )
        return plan

    async def deactivate_plan(self, plan_id: str) -> Plan:
        """Hide a plan from new purchases; existing subscriptions are untouched."""
        async with self.session_factory() as session:
            row = await repository.get_plan_row(session, plan_id)
            if row is None:
                raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
            if row.is_active:
                row.is_active = False
                await session.commit()
            plan = plan_from_row(row)

        logger.info("plan.deactivated", plan_id=plan_id, code=plan.code)
        return plan

    async def count_active_plans(self) -> int:
        return len(await self.list_plans(active_only=True))


__all__ = ["PlanCatalog"]
