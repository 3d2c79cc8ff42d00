"""
Plan catalog service.

The subscription engine consumes plans through ``find_plan``/``get_plan``;
operators add plans with ``create_plan``.
"""

from decimal import Decimal
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broadbandx.billing.catalog.entities import PlanEntity
from broadbandx.billing.catalog.models import (
    DataLimit,
    Plan,
    PlanCategory,
    PlanCreateRequest,
    PlanFeatures,
    PlanPricing,
    PlanSpeed,
    PlanStatus,
)
from broadbandx.billing.exceptions import PlanNotFoundError
from broadbandx.billing.money_utils import money_handler
from broadbandx.db import ensure_utc
from broadbandx.settings import BillingSettings, settings

logger = structlog.get_logger(__name__)


def _generate_plan_id() -> str:
    return f"plan_{uuid4().hex[:12]}"


class PlanService:
    """Read and write access to the plan catalog."""

    def __init__(
        self, db_session: AsyncSession, billing_settings: BillingSettings | None = None
    ) -> None:
        self.db = db_session
        self.billing_settings = billing_settings or settings.billing

    def default_yearly_price(self, monthly: Decimal, currency: str) -> Decimal:
        """Twelve monthly payments less the yearly discount."""
        yearly = monthly * 12 * self.billing_settings.yearly_discount_factor
        return money_handler.round_amount(yearly, currency)

    async def create_plan(self, plan_data: PlanCreateRequest) -> Plan:
        """Add a plan, deriving the yearly price when it is not given."""
        pricing = plan_data.pricing
        yearly = pricing.yearly
        if yearly is None:
            yearly = self.default_yearly_price(pricing.monthly, pricing.currency)

        data_limit = plan_data.features.data_limit
        entity = PlanEntity(
            plan_id=_generate_plan_id(),
            name=plan_data.name,
            description=plan_data.description,
            category=plan_data.category.value,
            status=plan_data.status.value,
            monthly_price=pricing.monthly,
            yearly_price=yearly,
            setup_fee=pricing.setup_fee,
            currency=pricing.currency,
            download_speed=plan_data.features.speed.download,
            upload_speed=plan_data.features.speed.upload,
            speed_unit=plan_data.features.speed.unit.value,
            data_limit_amount=data_limit.amount,
            data_limit_unit=data_limit.unit.value,
            unlimited_data=data_limit.unlimited,
        )
        self.db.add(entity)
        await self.db.commit()
        await self.db.refresh(entity)

        logger.info(
            "plan.created",
            plan_id=entity.plan_id,
            name=entity.name,
            monthly_price=str(entity.monthly_price),
            yearly_price=str(entity.yearly_price),
        )
        return self._to_domain(entity)

    async def find_plan(self, plan_id: str) -> Plan | None:
        """Return the plan or ``None``."""
        stmt = select(PlanEntity).where(PlanEntity.plan_id == plan_id)
        result = await self.db.execute(stmt)
        entity = result.scalar_one_or_none()
        return self._to_domain(entity) if entity else None

    async def get_plan(self, plan_id: str, require_available: bool = False) -> Plan:
        """Return the plan or raise ``PlanNotFoundError``.

        With ``require_available`` the plan must also be open for new business.
        """
        plan = await self.find_plan(plan_id)
        if plan is None or (require_available and not plan.is_available):
            raise PlanNotFoundError("Plan not found or not available", plan_id=plan_id)
        return plan

    async def list_plans(
        self, category: PlanCategory | None = None, include_inactive: bool = False
    ) -> list[Plan]:
        """List plans ordered by monthly price."""
        stmt = select(PlanEntity)
        if category is not None:
            stmt = stmt.where(PlanEntity.category == category.value)
        if not include_inactive:
            stmt = stmt.where(PlanEntity.status == PlanStatus.ACTIVE.value)
        stmt = stmt.order_by(PlanEntity.monthly_price, PlanEntity.id)

        result = await self.db.execute(stmt)
        return [self._to_domain(entity) for entity in result.scalars().all()]

    @staticmethod
    def _to_domain(entity: PlanEntity) -> Plan:
        return Plan(
            plan_id=entity.plan_id,
            name=entity.name,
            description=entity.description,
            category=PlanCategory(entity.category),
            status=PlanStatus(entity.status),
            pricing=PlanPricing(
                monthly=Decimal(entity.monthly_price),
                yearly=Decimal(entity.yearly_price),
                setup_fee=Decimal(entity.setup_fee or 0),
                currency=entity.currency,
            ),
            features=PlanFeatures(
                speed=PlanSpeed(
                    download=entity.download_speed,
                    upload=entity.upload_speed,
                    unit=entity.speed_unit,
                ),
                data_limit=DataLimit(
                    amount=(
                        Decimal(entity.data_limit_amount)
                        if entity.data_limit_amount is not None
                        else None
                    ),
                    unit=entity.data_limit_unit,
                    unlimited=entity.unlimited_data,
                ),
            ),
            created_at=ensure_utc(entity.created_at),
            updated_at=ensure_utc(entity.updated_at),
        )
