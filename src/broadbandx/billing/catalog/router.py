"""
Plan catalog router.

Customers browse available plans; admins add new ones.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query, status

from broadbandx.auth.core import UserInfo, get_current_user, require_admin
from broadbandx.billing.catalog.models import PlanCategory, PlanCreateRequest, PlanResponse
from broadbandx.billing.catalog.service import PlanService
from broadbandx.billing.dependencies import get_plan_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/plans", tags=["Plans"])


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    plan_data: PlanCreateRequest,
    current_user: Annotated[UserInfo, Depends(require_admin)],
    service: Annotated[PlanService, Depends(get_plan_service)],
) -> PlanResponse:
    """Add a plan to the catalog. Requires the admin role."""
    plan = await service.create_plan(plan_data)
    logger.info("plan.create.requested", plan_id=plan.plan_id, user_id=current_user.user_id)
    return PlanResponse.from_plan(plan)


@router.get("", response_model=list[PlanResponse])
async def list_plans(
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    service: Annotated[PlanService, Depends(get_plan_service)],
    category: PlanCategory | None = Query(None, description="Filter by category"),
    include_inactive: bool = Query(False, description="Include inactive and deprecated plans"),
) -> list[PlanResponse]:
    """List plans, cheapest first. Only admins see unavailable plans."""
    plans = await service.list_plans(
        category=category, include_inactive=include_inactive and current_user.is_admin
    )
    return [PlanResponse.from_plan(plan) for plan in plans]


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    service: Annotated[PlanService, Depends(get_plan_service)],
) -> PlanResponse:
    """Get a single plan."""
    plan = await service.get_plan(plan_id)
    return PlanResponse.from_plan(plan)
