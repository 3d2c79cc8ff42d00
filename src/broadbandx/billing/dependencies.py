"""
Billing module dependencies.

Services are built per request around the request's database session.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from broadbandx.billing.catalog.service import PlanService
from broadbandx.billing.subscriptions.service import SubscriptionService
from broadbandx.db import get_async_session
from broadbandx.settings import settings


def get_plan_service(db: AsyncSession = Depends(get_async_session)) -> PlanService:
    return PlanService(db, billing_settings=settings.billing)


def get_subscription_service(
    db: AsyncSession = Depends(get_async_session),
    plan_service: PlanService = Depends(get_plan_service),
) -> SubscriptionService:
    return SubscriptionService(db, plan_service=plan_service, billing_settings=settings.billing)
