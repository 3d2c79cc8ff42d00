"""
Subscription lifecycle service.

Runs every subscription operation as one read-modify-write against the store:
load the row, check ownership and the lifecycle transition, apply pricing,
append service history and commit once. The optimistic-lock counter on the
subscription row turns a lost race into ``ConcurrentModificationError``.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from broadbandx.auth.core import UserInfo
from broadbandx.billing.catalog.models import BillingCycle, Plan
from broadbandx.billing.catalog.service import PlanService
from broadbandx.billing.exceptions import (
    BillingError,
    ConcurrentModificationError,
    CurrencyMismatchError,
    InvalidTransitionError,
    SubscriptionAccessDeniedError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from broadbandx.billing.money_utils import format_amount
from broadbandx.billing.subscriptions.entities import (
    PaymentEntity,
    ServiceHistoryEntity,
    SubscriptionEntity,
    UsageHistoryEntity,
)
from broadbandx.billing.subscriptions.lifecycle import LifecycleEvent, next_status
from broadbandx.billing.subscriptions.models import (
    AUTO_RENEWAL_METHOD,
    SYSTEM_ACTOR,
    CancellationRecord,
    CancellationRequest,
    CancellationResult,
    CurrentMonthUsage,
    InstallationRecord,
    InstallationScheduleRequest,
    MonthlyUsage,
    PaymentCreateRequest,
    PaymentRecord,
    PaymentStatus,
    PlanChangeResult,
    PlanDowngradeRequest,
    PlanUpgradeRequest,
    PricingSnapshot,
    ServiceEventType,
    ServiceHistoryEntry,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
    SubscriptionStatus,
    UsageData,
    UsageSummary,
    UsageUpdateRequest,
)
from broadbandx.billing.subscriptions.pricing import (
    add_billing_period,
    calculate_pricing,
    calculate_upgrade_proration,
    days_remaining,
    evaluate_refund,
    period_days,
    reprice_for_plan,
    usage_percentage,
)
from broadbandx.db import ensure_utc
from broadbandx.logging import log_audit_event
from broadbandx.settings import BillingSettings, settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def _generate_subscription_id() -> str:
    return f"sub_{uuid4().hex[:12]}"


def _generate_invoice_number(now: datetime) -> str:
    return f"INV-{int(now.timestamp() * 1000)}-{uuid4().hex[:6].upper()}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SubscriptionService:
    """Subscription lifecycle and pricing operations."""

    def __init__(
        self,
        db_session: AsyncSession,
        plan_service: PlanService | None = None,
        billing_settings: BillingSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db_session
        self.billing_settings = billing_settings or settings.billing
        self.plan_service = plan_service or PlanService(db_session, self.billing_settings)
        self._clock = clock or _utc_now

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # ==================== Creation ====================

    async def create_subscription(
        self, request: SubscriptionCreateRequest, actor: UserInfo
    ) -> Subscription:
        """
        Subscribe a user to an available plan.

        Args:
            request: Plan, cycle, discount code and provisioning options
            actor: Acting user; admins may subscribe someone else via ``request.user_id``

        Returns:
            The new subscription, ``active`` when ``activate_immediately`` is set,
            otherwise ``pending``

        Raises:
            PlanNotFoundError: Plan missing or not active
            SubscriptionConflictError: User already has an active subscription on the plan
        """
        user_id = request.user_id or actor.user_id
        if user_id != actor.user_id and not actor.is_admin:
            raise SubscriptionAccessDeniedError(
                "Only administrators can subscribe on behalf of another user",
                user_id=actor.user_id,
            )

        plan = await self.plan_service.get_plan(request.plan_id, require_available=True)
        await self._ensure_no_active_duplicate(user_id, plan.plan_id)

        now = self._now()
        start_date = request.start_date or now
        end_date = add_billing_period(start_date, request.billing_cycle)
        pricing = calculate_pricing(
            plan.pricing.price_for(request.billing_cycle),
            plan.pricing.currency,
            self.billing_settings,
            discount_code=request.discount_code,
        )
        status = SubscriptionStatus.PENDING
        if request.activate_immediately:
            status = SubscriptionStatus.ACTIVE

        entity = SubscriptionEntity(
            subscription_id=_generate_subscription_id(),
            user_id=user_id,
            plan_id=plan.plan_id,
            status=status.value,
            billing_cycle=request.billing_cycle.value,
            start_date=start_date,
            end_date=end_date,
            discount_code=request.discount_code,
            installation_address=request.installation_address,
            installation_scheduled=False,
            current_month_usage=Decimal("0"),
            created_at=now,
            updated_at=now,
        )
        self._apply_pricing(entity, pricing)
        self._append_history(
            entity,
            ServiceEventType.CREATED,
            f"Subscription created for {plan.name} ({request.billing_cycle.value})",
            actor.user_id,
            now,
            metadata={
                "plan_name": plan.name,
                "billing_cycle": request.billing_cycle.value,
                "total_amount": str(pricing.total_amount),
            },
        )
        self.db.add(entity)

        subscription = await self._commit(entity)
        logger.info(
            "subscription.created",
            subscription_id=subscription.subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=status.value,
            billing_cycle=request.billing_cycle.value,
            total_amount=str(pricing.total_amount),
        )
        log_audit_event(
            "subscription.created",
            user_id=actor.user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            plan_id=plan.plan_id,
        )
        return subscription

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: str, actor: UserInfo) -> Subscription:
        """Get a subscription with its full history."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        return self._to_domain(entity)

    async def list_subscriptions(
        self,
        actor: UserInfo,
        status: SubscriptionStatus | None = None,
        page: int = 1,
        page_size: int = 20,
        user_id: str | None = None,
    ) -> SubscriptionListResponse:
        """List the actor's subscriptions, newest first.

        Admins may pass ``user_id`` to list another user's subscriptions.
        """
        owner_id = user_id if (user_id and actor.is_admin) else actor.user_id

        filters = [SubscriptionEntity.user_id == owner_id]
        if status is not None:
            filters.append(SubscriptionEntity.status == status.value)

        count_stmt = select(func.count()).select_from(SubscriptionEntity).where(*filters)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(SubscriptionEntity)
            .where(*filters)
            .order_by(SubscriptionEntity.created_at.desc(), SubscriptionEntity.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(stmt)
        subscriptions = [self._to_domain(entity) for entity in result.scalars().all()]

        return SubscriptionListResponse(
            subscriptions=subscriptions,
            total=total,
            page=page,
            page_size=page_size,
            pages=(total + page_size - 1) // page_size if total else 0,
        )

    # ==================== Lifecycle ====================

    async def activate_subscription(self, subscription_id: str, actor: UserInfo) -> Subscription:
        """Move a pending subscription to active. Admin only; idempotent on active."""
        if not actor.is_admin:
            raise SubscriptionAccessDeniedError(
                "Only administrators can activate subscriptions",
                subscription_id=subscription_id,
                user_id=actor.user_id,
            )
        entity = await self._get_entity(subscription_id)
        current = SubscriptionStatus(entity.status)
        self._transition(entity, LifecycleEvent.ACTIVATE)
        if current == SubscriptionStatus.ACTIVE:
            return self._to_domain(entity)

        await self._ensure_no_active_duplicate(
            entity.user_id, entity.plan_id, exclude_subscription_id=entity.subscription_id
        )

        now = self._now()
        entity.status = SubscriptionStatus.ACTIVE.value
        self._append_history(
            entity, ServiceEventType.ACTIVATED, "Subscription activated", actor.user_id, now
        )
        return await self._commit_transition(entity, "subscription.activated", actor)

    async def upgrade_plan(
        self, subscription_id: str, request: PlanUpgradeRequest, actor: UserInfo
    ) -> PlanChangeResult:
        """
        Move an active subscription to a more expensive plan, effective now.

        The unused share of the current price is credited against the new
        price for the rest of the period. The difference is reported in the
        result and is not charged here.

        Raises:
            InvalidTransitionError: Not active, or target is not a higher tier
            CurrencyMismatchError: Target plan priced in another currency
        """
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        self._transition(entity, LifecycleEvent.UPGRADE)

        current_plan, target_plan = await self._plans_for_change(entity, request.new_plan_id)
        if target_plan.pricing.monthly <= current_plan.pricing.monthly:
            raise self._tier_error(entity, current_plan, target_plan, "higher")
        await self._ensure_no_active_duplicate(
            entity.user_id, target_plan.plan_id, exclude_subscription_id=entity.subscription_id
        )

        now = self._now()
        cycle = BillingCycle(entity.billing_cycle)
        new_price = target_plan.pricing.price_for(cycle)
        proration = calculate_upgrade_proration(
            Decimal(entity.final_price),
            new_price,
            days_remaining(ensure_utc(entity.end_date), now),
            period_days(cycle, self.billing_settings),
            entity.currency,
        )

        entity.plan_id = target_plan.plan_id
        self._apply_pricing(entity, reprice_for_plan(self._pricing_snapshot(entity), new_price))
        self._append_history(
            entity,
            ServiceEventType.UPGRADED,
            f"Upgraded from {current_plan.name} to {target_plan.name}, "
            f"additional cost {format_amount(proration.additional_cost, entity.currency)}",
            actor.user_id,
            now,
            metadata={
                "old_plan_id": current_plan.plan_id,
                "old_plan_name": current_plan.name,
                "new_plan_id": target_plan.plan_id,
                "new_plan_name": target_plan.name,
                "remaining_days": proration.remaining_days,
                "prorated_credit": str(proration.prorated_credit),
                "prorated_new_cost": str(proration.prorated_new_cost),
                "additional_cost": str(proration.additional_cost),
            },
        )
        subscription = await self._commit_transition(
            entity,
            "subscription.upgraded",
            actor,
            old_plan_id=current_plan.plan_id,
            new_plan_id=target_plan.plan_id,
            additional_cost=str(proration.additional_cost),
        )
        return PlanChangeResult(
            subscription=subscription,
            old_plan_id=current_plan.plan_id,
            new_plan_id=target_plan.plan_id,
            effective_date=now,
            proration=proration,
            additional_cost=proration.additional_cost,
        )

    async def downgrade_plan(
        self, subscription_id: str, request: PlanDowngradeRequest, actor: UserInfo
    ) -> PlanChangeResult:
        """
        Move an active subscription to a cheaper plan.

        A future ``effective_date`` only records the downgrade as scheduled;
        plan and pricing stay untouched. Otherwise the plan swap applies now,
        without proration.
        """
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        self._transition(entity, LifecycleEvent.DOWNGRADE)

        current_plan, target_plan = await self._plans_for_change(entity, request.new_plan_id)
        if target_plan.pricing.monthly >= current_plan.pricing.monthly:
            raise self._tier_error(entity, current_plan, target_plan, "lower")

        now = self._now()
        effective_date = request.effective_date
        change_metadata: dict[str, Any] = {
            "old_plan_id": current_plan.plan_id,
            "old_plan_name": current_plan.name,
            "new_plan_id": target_plan.plan_id,
            "new_plan_name": target_plan.name,
        }

        if effective_date is not None and effective_date > now:
            self._append_history(
                entity,
                ServiceEventType.DOWNGRADE_SCHEDULED,
                f"Downgrade to {target_plan.name} scheduled for "
                f"{effective_date.date().isoformat()}",
                actor.user_id,
                now,
                metadata={
                    **change_metadata,
                    "scheduled": True,
                    "effective_date": effective_date.isoformat(),
                },
            )
            subscription = await self._commit_transition(
                entity,
                "subscription.downgrade_scheduled",
                actor,
                new_plan_id=target_plan.plan_id,
                effective_date=effective_date.isoformat(),
            )
            return PlanChangeResult(
                subscription=subscription,
                old_plan_id=current_plan.plan_id,
                new_plan_id=target_plan.plan_id,
                scheduled=True,
                effective_date=effective_date,
            )

        await self._ensure_no_active_duplicate(
            entity.user_id, target_plan.plan_id, exclude_subscription_id=entity.subscription_id
        )
        new_price = target_plan.pricing.price_for(BillingCycle(entity.billing_cycle))
        entity.plan_id = target_plan.plan_id
        self._apply_pricing(entity, reprice_for_plan(self._pricing_snapshot(entity), new_price))
        self._append_history(
            entity,
            ServiceEventType.DOWNGRADED,
            f"Downgraded from {current_plan.name} to {target_plan.name}",
            actor.user_id,
            now,
            metadata={**change_metadata, "scheduled": False},
        )
        subscription = await self._commit_transition(
            entity,
            "subscription.downgraded",
            actor,
            old_plan_id=current_plan.plan_id,
            new_plan_id=target_plan.plan_id,
        )
        return PlanChangeResult(
            subscription=subscription,
            old_plan_id=current_plan.plan_id,
            new_plan_id=target_plan.plan_id,
            effective_date=now,
        )

    async def cancel_subscription(
        self, subscription_id: str, request: CancellationRequest, actor: UserInfo
    ) -> CancellationResult:
        """
        Cancel a subscription and decide on a refund.

        A refund of the full total is due when cancelling within the refund
        window with current-month usage under the threshold. ``end_date`` is
        left as is.

        Raises:
            SubscriptionConflictError: Already cancelled
        """
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        self._transition(entity, LifecycleEvent.CANCEL)

        now = self._now()
        plan = await self.plan_service.find_plan(entity.plan_id)
        usage_pct = (
            usage_percentage(Decimal(entity.current_month_usage), plan.features.data_limit)
            if plan
            else Decimal("0")
        )
        refund_eligible, refund_amount = evaluate_refund(
            self._pricing_snapshot(entity),
            ensure_utc(entity.start_date),
            usage_pct,
            now,
            self.billing_settings,
        )

        entity.status = SubscriptionStatus.CANCELLED.value
        entity.cancellation_requested_at = now
        entity.cancellation_effective_at = request.effective_date or now
        entity.cancellation_reason = request.reason
        entity.cancelled_by = actor.user_id
        entity.refund_eligible = refund_eligible
        entity.refund_amount = refund_amount
        self._append_history(
            entity,
            ServiceEventType.CANCELLED,
            f"Subscription cancelled: {request.reason}",
            actor.user_id,
            now,
            metadata={
                "reason": request.reason,
                "refund_eligible": refund_eligible,
                "refund_amount": str(refund_amount),
                "usage_percentage": str(usage_pct),
            },
        )
        subscription = await self._commit_transition(
            entity,
            "subscription.cancelled",
            actor,
            refund_eligible=refund_eligible,
            refund_amount=str(refund_amount),
        )
        return CancellationResult(
            subscription=subscription,
            refund_eligible=refund_eligible,
            refund_amount=refund_amount,
        )

    async def renew_subscription(self, subscription_id: str, actor: UserInfo) -> Subscription:
        """
        Extend the period by one billing cycle and record the renewal payment.

        Works on active and expired subscriptions; an expired one becomes active
        again, subject to the one-active-per-plan rule.
        """
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        self._transition(entity, LifecycleEvent.RENEW)

        if entity.status == SubscriptionStatus.EXPIRED.value:
            await self._ensure_no_active_duplicate(
                entity.user_id, entity.plan_id, exclude_subscription_id=entity.subscription_id
            )

        now = self._now()
        previous_end = ensure_utc(entity.end_date)
        new_end = add_billing_period(previous_end, BillingCycle(entity.billing_cycle))
        invoice_number = _generate_invoice_number(now)

        entity.status = SubscriptionStatus.ACTIVE.value
        entity.end_date = new_end
        entity.payments.append(
            PaymentEntity(
                paid_at=now,
                amount=entity.total_amount,
                method=AUTO_RENEWAL_METHOD,
                status=PaymentStatus.COMPLETED.value,
                invoice_number=invoice_number,
            )
        )
        self._append_history(
            entity,
            ServiceEventType.RENEWED,
            f"Subscription renewed until {new_end.date().isoformat()}, "
            f"charged {format_amount(Decimal(entity.total_amount), entity.currency)}",
            actor.user_id,
            now,
            metadata={
                "previous_end_date": previous_end.isoformat(),
                "new_end_date": new_end.isoformat(),
                "invoice_number": invoice_number,
                "amount": str(entity.total_amount),
            },
        )
        return await self._commit_transition(
            entity,
            "subscription.renewed",
            actor,
            new_end_date=new_end.isoformat(),
            invoice_number=invoice_number,
        )

    async def pause_subscription(
        self, subscription_id: str, actor: UserInfo, reason: str | None = None
    ) -> Subscription:
        """Suspend an active subscription."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        entity.status = self._transition(entity, LifecycleEvent.PAUSE).value

        self._append_history(
            entity,
            ServiceEventType.SUSPENDED,
            reason or "User request",
            actor.user_id,
            self._now(),
            metadata={"reason": reason} if reason else None,
        )
        return await self._commit_transition(entity, "subscription.paused", actor)

    async def resume_subscription(self, subscription_id: str, actor: UserInfo) -> Subscription:
        """Reactivate a suspended subscription."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        entity.status = self._transition(entity, LifecycleEvent.RESUME).value

        self._append_history(
            entity, ServiceEventType.RESUMED, "Subscription resumed", actor.user_id, self._now()
        )
        return await self._commit_transition(entity, "subscription.resumed", actor)

    async def expire_lapsed_subscriptions(self, now: datetime | None = None) -> list[str]:
        """
        Expire every active subscription whose period ended at or before ``now``.

        Returns:
            Ids of the subscriptions moved to ``expired``
        """
        now = ensure_utc(now) if now else self._now()
        stmt = (
            select(SubscriptionEntity)
            .where(
                SubscriptionEntity.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionEntity.end_date <= now,
            )
            .order_by(SubscriptionEntity.id)
        )
        result = await self.db.execute(stmt)
        entities = list(result.scalars().all())

        for entity in entities:
            entity.status = self._transition(entity, LifecycleEvent.EXPIRE).value
            self._append_history(
                entity,
                ServiceEventType.EXPIRED,
                f"Subscription expired on {ensure_utc(entity.end_date).date().isoformat()}",
                SYSTEM_ACTOR,
                now,
            )

        expired_ids = [entity.subscription_id for entity in entities]
        if entities:
            await self._flush_and_commit()
        logger.info(
            "subscription.expiry_sweep.completed", expired=len(expired_ids), as_of=now.isoformat()
        )
        return expired_ids

    # ==================== Usage ====================

    async def get_usage(self, subscription_id: str, actor: UserInfo) -> UsageSummary:
        """Current-month usage, monthly history and usage against the plan limit."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        return await self._usage_summary(self._to_domain(entity))

    async def record_usage(
        self, subscription_id: str, request: UsageUpdateRequest, actor: UserInfo
    ) -> UsageSummary:
        """
        Record data consumption. Admin only.

        With ``month`` and ``year`` the history row for that month is created or
        replaced; otherwise the current month's figure is set.
        """
        if not actor.is_admin:
            raise SubscriptionAccessDeniedError(
                "Only administrators can record usage",
                subscription_id=subscription_id,
                user_id=actor.user_id,
            )
        entity = await self._get_entity(subscription_id)
        now = self._now()

        if request.month is not None and request.year is not None:
            row = next(
                (
                    row
                    for row in entity.usage_history
                    if row.month == request.month and row.year == request.year
                ),
                None,
            )
            if row is None:
                entity.usage_history.append(
                    UsageHistoryEntity(
                        month=request.month, year=request.year, data_used=request.data_used
                    )
                )
            else:
                row.data_used = request.data_used
        else:
            entity.current_month_usage = request.data_used
            entity.usage_updated_at = now
        entity.updated_at = now

        subscription = await self._commit(entity)
        logger.info(
            "subscription.usage_recorded",
            subscription_id=subscription_id,
            data_used=str(request.data_used),
            month=request.month,
            year=request.year,
        )
        return await self._usage_summary(subscription)

    # ==================== Installation & Payments ====================

    async def schedule_installation(
        self, subscription_id: str, request: InstallationScheduleRequest, actor: UserInfo
    ) -> Subscription:
        """Book the installation visit."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        self._transition(entity, LifecycleEvent.SCHEDULE_INSTALLATION)

        now = self._now()
        if request.address:
            entity.installation_address = request.address
        entity.installation_scheduled = True
        entity.installation_date = request.scheduled_date
        entity.installation_instructions = request.instructions
        self._append_history(
            entity,
            ServiceEventType.INSTALLATION_SCHEDULED,
            f"Installation scheduled for {request.scheduled_date.date().isoformat()}",
            actor.user_id,
            now,
            metadata={
                "scheduled_date": request.scheduled_date.isoformat(),
                "address": entity.installation_address,
            },
        )
        return await self._commit_transition(
            entity,
            "subscription.installation_scheduled",
            actor,
            scheduled_date=request.scheduled_date.isoformat(),
        )

    async def record_payment(
        self, subscription_id: str, request: PaymentCreateRequest, actor: UserInfo
    ) -> PaymentRecord:
        """Append a completed payment with a fresh invoice number."""
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)

        now = self._now()
        invoice_number = _generate_invoice_number(now)
        entity.payments.append(
            PaymentEntity(
                paid_at=now,
                amount=request.amount,
                method=request.method,
                status=PaymentStatus.COMPLETED.value,
                invoice_number=invoice_number,
                transaction_id=request.transaction_id,
            )
        )
        entity.updated_at = now

        subscription = await self._commit(entity)
        logger.info(
            "subscription.payment_recorded",
            subscription_id=subscription_id,
            amount=str(request.amount),
            method=request.method,
            invoice_number=invoice_number,
        )
        log_audit_event(
            "subscription.payment_recorded",
            user_id=actor.user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            invoice_number=invoice_number,
        )
        return subscription.payment_history[-1]

    async def get_payment_history(
        self, subscription_id: str, actor: UserInfo
    ) -> list[PaymentRecord]:
        entity = await self._get_entity(subscription_id)
        self._ensure_can_manage(entity, actor)
        return self._to_domain(entity).payment_history

    # ==================== Helpers ====================

    async def _get_entity(self, subscription_id: str, refresh: bool = False) -> SubscriptionEntity:
        stmt = select(SubscriptionEntity).where(
            SubscriptionEntity.subscription_id == subscription_id
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return entity

    def _ensure_can_manage(self, entity: SubscriptionEntity, actor: UserInfo) -> None:
        if actor.is_admin or entity.user_id == actor.user_id:
            return
        logger.warning(
            "subscription.access_denied",
            subscription_id=entity.subscription_id,
            user_id=actor.user_id,
        )
        raise SubscriptionAccessDeniedError(
            "Not authorized to manage this subscription",
            subscription_id=entity.subscription_id,
            user_id=actor.user_id,
        )

    async def _ensure_no_active_duplicate(
        self, user_id: str, plan_id: str, exclude_subscription_id: str | None = None
    ) -> None:
        """One active subscription per user and plan."""
        stmt = (
            select(func.count())
            .select_from(SubscriptionEntity)
            .where(
                SubscriptionEntity.user_id == user_id,
                SubscriptionEntity.plan_id == plan_id,
                SubscriptionEntity.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        if exclude_subscription_id:
            stmt = stmt.where(SubscriptionEntity.subscription_id != exclude_subscription_id)

        if (await self.db.execute(stmt)).scalar_one():
            logger.warning("subscription.duplicate_rejected", user_id=user_id, plan_id=plan_id)
            raise SubscriptionConflictError(
                "User already has an active subscription for this plan",
                user_id=user_id,
                plan_id=plan_id,
            )

    def _transition(self, entity: SubscriptionEntity, event: LifecycleEvent) -> SubscriptionStatus:
        try:
            return next_status(SubscriptionStatus(entity.status), event, entity.subscription_id)
        except BillingError as e:
            logger.warning(
                "subscription.transition_rejected",
                subscription_id=entity.subscription_id,
                status=entity.status,
                transition=event.value,
                error_code=e.error_code,
            )
            raise

    async def _plans_for_change(
        self, entity: SubscriptionEntity, new_plan_id: str
    ) -> tuple[Plan, Plan]:
        current_plan = await self.plan_service.get_plan(entity.plan_id)
        target_plan = await self.plan_service.get_plan(new_plan_id, require_available=True)
        if target_plan.pricing.currency != entity.currency:
            raise CurrencyMismatchError(
                "Target plan is priced in a different currency",
                current_currency=entity.currency,
                target_currency=target_plan.pricing.currency,
            )
        return current_plan, target_plan

    @staticmethod
    def _tier_error(
        entity: SubscriptionEntity, current_plan: Plan, target_plan: Plan, direction: str
    ) -> InvalidTransitionError:
        logger.warning(
            "subscription.plan_change_rejected",
            subscription_id=entity.subscription_id,
            current_plan_id=current_plan.plan_id,
            new_plan_id=target_plan.plan_id,
        )
        return InvalidTransitionError(
            f"New plan must be a {direction} tier than the current plan",
            current_state=entity.status,
            requested_state=entity.status,
            context={
                "current_plan_id": current_plan.plan_id,
                "current_monthly_price": str(current_plan.pricing.monthly),
                "new_plan_id": target_plan.plan_id,
                "new_monthly_price": str(target_plan.pricing.monthly),
            },
        )

    @staticmethod
    def _apply_pricing(entity: SubscriptionEntity, pricing: PricingSnapshot) -> None:
        entity.base_price = pricing.base_price
        entity.discount_applied = pricing.discount_applied
        entity.final_price = pricing.final_price
        entity.tax_amount = pricing.tax_amount
        entity.total_amount = pricing.total_amount
        entity.currency = pricing.currency

    @staticmethod
    def _pricing_snapshot(entity: SubscriptionEntity) -> PricingSnapshot:
        return PricingSnapshot(
            base_price=Decimal(entity.base_price),
            discount_applied=Decimal(entity.discount_applied),
            final_price=Decimal(entity.final_price),
            tax_amount=Decimal(entity.tax_amount),
            total_amount=Decimal(entity.total_amount),
            currency=entity.currency,
        )

    @staticmethod
    def _append_history(
        entity: SubscriptionEntity,
        event_type: ServiceEventType,
        description: str,
        performed_by: str,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        entity.service_history.append(
            ServiceHistoryEntity(
                timestamp=now,
                event_type=event_type.value,
                description=description,
                performed_by=performed_by,
                event_metadata=metadata or {},
            )
        )
        # Always write the row so the version check runs
        entity.updated_at = now

    async def _flush_and_commit(self, entity: SubscriptionEntity | None = None) -> None:
        subscription_id: str | None = None
        user_id: str | None = None
        plan_id: str | None = None
        writes_active = False
        if entity is not None:
            # Attributes expire on rollback, read them up front
            subscription_id = entity.subscription_id
            user_id, plan_id = entity.user_id, entity.plan_id
            writes_active = entity.status == SubscriptionStatus.ACTIVE.value
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            logger.warning("subscription.concurrent_modification", subscription_id=subscription_id)
            raise ConcurrentModificationError(
                "Subscription was modified by another request", subscription_id=subscription_id
            ) from e
        except IntegrityError as e:
            await self.db.rollback()
            if not writes_active:
                raise
            # A concurrent request activated the same user and plan first
            logger.warning(
                "subscription.duplicate_rejected",
                subscription_id=subscription_id,
                user_id=user_id,
                plan_id=plan_id,
            )
            raise SubscriptionConflictError(
                "User already has an active subscription for this plan",
                subscription_id=subscription_id,
                user_id=user_id,
                plan_id=plan_id,
            ) from e
        except Exception:
            await self.db.rollback()
            raise

    async def _commit(self, entity: SubscriptionEntity) -> Subscription:
        await self._flush_and_commit(entity)
        refreshed = await self._get_entity(entity.subscription_id, refresh=True)
        return self._to_domain(refreshed)

    async def _commit_transition(
        self, entity: SubscriptionEntity, event: str, actor: UserInfo, **details: Any
    ) -> Subscription:
        subscription = await self._commit(entity)
        logger.info(
            event,
            subscription_id=subscription.subscription_id,
            status=subscription.status.value,
            plan_id=subscription.plan_id,
            performed_by=actor.user_id,
            **details,
        )
        log_audit_event(
            event,
            user_id=actor.user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            **details,
        )
        return subscription

    async def _usage_summary(self, subscription: Subscription) -> UsageSummary:
        plan = await self.plan_service.get_plan(subscription.plan_id)
        usage = subscription.usage
        return UsageSummary(
            current_month=usage.current_month,
            history=sorted(usage.history, key=lambda row: (row.year, row.month)),
            usage_percentage=usage_percentage(
                usage.current_month.data_used, plan.features.data_limit
            ),
            plan_limit=plan.features.data_limit.label,
        )

    @staticmethod
    def _to_domain(entity: SubscriptionEntity) -> Subscription:
        cancellation = None
        if entity.cancellation_requested_at is not None:
            cancellation = CancellationRecord(
                request_date=entity.cancellation_requested_at,
                effective_date=entity.cancellation_effective_at or entity.cancellation_requested_at,
                reason=entity.cancellation_reason or "",
                requested_by=entity.cancelled_by or "",
                refund_eligible=bool(entity.refund_eligible),
                refund_amount=Decimal(entity.refund_amount or 0),
            )

        return Subscription(
            subscription_id=entity.subscription_id,
            user_id=entity.user_id,
            plan_id=entity.plan_id,
            status=SubscriptionStatus(entity.status),
            billing_cycle=BillingCycle(entity.billing_cycle),
            start_date=entity.start_date,
            end_date=entity.end_date,
            pricing=SubscriptionService._pricing_snapshot(entity),
            discount_code=entity.discount_code,
            cancellation=cancellation,
            installation=InstallationRecord(
                address=entity.installation_address,
                scheduled=entity.installation_scheduled,
                scheduled_date=entity.installation_date,
                instructions=entity.installation_instructions,
            ),
            service_history=[
                ServiceHistoryEntry(
                    timestamp=row.timestamp,
                    type=ServiceEventType(row.event_type),
                    description=row.description,
                    performed_by=row.performed_by,
                    metadata=row.event_metadata or {},
                )
                for row in entity.service_history
            ],
            payment_history=[
                PaymentRecord(
                    date=row.paid_at,
                    amount=Decimal(row.amount),
                    method=row.method,
                    status=PaymentStatus(row.status),
                    invoice_number=row.invoice_number,
                    transaction_id=row.transaction_id,
                )
                for row in entity.payments
            ],
            usage=UsageData(
                current_month=CurrentMonthUsage(
                    data_used=Decimal(entity.current_month_usage or 0),
                    last_updated=entity.usage_updated_at,
                ),
                history=[
                    MonthlyUsage(month=row.month, year=row.year, data_used=Decimal(row.data_used))
                    for row in entity.usage_history
                ],
            ),
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )
