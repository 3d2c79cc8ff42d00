"""
Subscription lifecycle router.

Thin HTTP layer over ``SubscriptionService``. Business errors propagate to
the application's ``BillingError`` handler.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Body, Depends, Query, status

from broadbandx.auth.core import UserInfo, get_current_user
from broadbandx.billing.dependencies import get_subscription_service
from broadbandx.billing.subscriptions.models import (
    CancellationRequest,
    CancellationResult,
    InstallationScheduleRequest,
    PauseRequest,
    PaymentCreateRequest,
    PaymentRecord,
    PlanChangeResult,
    PlanDowngradeRequest,
    PlanUpgradeRequest,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
    SubscriptionStatus,
    UsageSummary,
    UsageUpdateRequest,
)
from broadbandx.billing.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])

CurrentUser = Annotated[UserInfo, Depends(get_current_user)]
Service = Annotated[SubscriptionService, Depends(get_subscription_service)]


# ==================== Subscriptions ====================


@router.post("", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreateRequest,
    current_user: CurrentUser,
    service: Service,
) -> Subscription:
    """Subscribe to a plan."""
    return await service.create_subscription(request, current_user)


@router.get("", response_model=SubscriptionListResponse)
async def list_subscriptions(
    current_user: CurrentUser,
    service: Service,
    status_filter: SubscriptionStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str | None = Query(None, description="Another user's subscriptions (admin only)"),
) -> SubscriptionListResponse:
    """List the current user's subscriptions, newest first."""
    return await service.list_subscriptions(
        current_user, status=status_filter, page=page, page_size=page_size, user_id=user_id
    )


@router.get("/{subscription_id}", response_model=Subscription)
async def get_subscription(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> Subscription:
    return await service.get_subscription(subscription_id, current_user)


# ==================== Lifecycle ====================


@router.put("/{subscription_id}/activate", response_model=Subscription)
async def activate_subscription(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> Subscription:
    """Activate a pending subscription. Requires the admin role."""
    return await service.activate_subscription(subscription_id, current_user)


@router.put("/{subscription_id}/upgrade", response_model=PlanChangeResult)
async def upgrade_plan(
    subscription_id: str,
    request: PlanUpgradeRequest,
    current_user: CurrentUser,
    service: Service,
) -> PlanChangeResult:
    """Upgrade to a higher-priced plan with proration."""
    return await service.upgrade_plan(subscription_id, request, current_user)


@router.put("/{subscription_id}/downgrade", response_model=PlanChangeResult)
async def downgrade_plan(
    subscription_id: str,
    request: PlanDowngradeRequest,
    current_user: CurrentUser,
    service: Service,
) -> PlanChangeResult:
    """Downgrade now, or schedule it with a future ``effective_date``."""
    return await service.downgrade_plan(subscription_id, request, current_user)


@router.put("/{subscription_id}/cancel", response_model=CancellationResult)
async def cancel_subscription(
    subscription_id: str,
    request: CancellationRequest,
    current_user: CurrentUser,
    service: Service,
) -> CancellationResult:
    return await service.cancel_subscription(subscription_id, request, current_user)


@router.put("/{subscription_id}/renew", response_model=Subscription)
async def renew_subscription(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> Subscription:
    return await service.renew_subscription(subscription_id, current_user)


@router.put("/{subscription_id}/pause", response_model=Subscription)
async def pause_subscription(
    subscription_id: str,
    current_user: CurrentUser,
    service: Service,
    request: Annotated[PauseRequest | None, Body()] = None,
) -> Subscription:
    reason = request.reason if request else None
    return await service.pause_subscription(subscription_id, current_user, reason=reason)


@router.put("/{subscription_id}/resume", response_model=Subscription)
async def resume_subscription(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> Subscription:
    return await service.resume_subscription(subscription_id, current_user)


# ==================== Usage ====================


@router.get("/{subscription_id}/usage", response_model=UsageSummary)
async def get_usage(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> UsageSummary:
    return await service.get_usage(subscription_id, current_user)


@router.put("/{subscription_id}/usage", response_model=UsageSummary)
async def record_usage(
    subscription_id: str,
    request: UsageUpdateRequest,
    current_user: CurrentUser,
    service: Service,
) -> UsageSummary:
    """Record data usage. Requires the admin role."""
    return await service.record_usage(subscription_id, request, current_user)


# ==================== Installation & Payments ====================


@router.post("/{subscription_id}/schedule-installation", response_model=Subscription)
async def schedule_installation(
    subscription_id: str,
    request: InstallationScheduleRequest,
    current_user: CurrentUser,
    service: Service,
) -> Subscription:
    return await service.schedule_installation(subscription_id, request, current_user)


@router.post(
    "/{subscription_id}/payment",
    response_model=PaymentRecord,
    status_code=status.HTTP_201_CREATED,
)
async def record_payment(
    subscription_id: str,
    request: PaymentCreateRequest,
    current_user: CurrentUser,
    service: Service,
) -> PaymentRecord:
    payment = await service.record_payment(subscription_id, request, current_user)
    logger.info(
        "subscription.payment.requested",
        subscription_id=subscription_id,
        invoice_number=payment.invoice_number,
    )
    return payment


@router.get("/{subscription_id}/payments", response_model=list[PaymentRecord])
async def get_payment_history(
    subscription_id: str, current_user: CurrentUser, service: Service
) -> list[PaymentRecord]:
    return await service.get_payment_history(subscription_id, current_user)
