"""
Tests for the subscription lifecycle service.

Runs against in-memory SQLite with an injected clock; subscriptions start on
2024-03-01 12:00 UTC unless stated otherwise.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from broadbandx.billing.catalog.models import (
    BillingCycle,
    PlanCreateRequest,
    PlanFeatures,
    PlanPricingInput,
    PlanSpeed,
)
from broadbandx.billing.catalog.service import PlanService
from broadbandx.billing.exceptions import (
    ConcurrentModificationError,
    CurrencyMismatchError,
    InvalidTransitionError,
    PlanNotFoundError,
    SubscriptionAccessDeniedError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from broadbandx.billing.subscriptions.entities import SubscriptionEntity
from broadbandx.billing.subscriptions.models import (
    CancellationRequest,
    InstallationScheduleRequest,
    PaymentCreateRequest,
    PaymentStatus,
    PlanDowngradeRequest,
    PlanUpgradeRequest,
    ServiceEventType,
    SubscriptionCreateRequest,
    SubscriptionStatus,
    UsageUpdateRequest,
)
from broadbandx.billing.subscriptions.service import SubscriptionService
from broadbandx.db import Base

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


async def _subscribe(service, user, plan, **kwargs):
    kwargs.setdefault("activate_immediately", True)
    return await service.create_subscription(
        SubscriptionCreateRequest(plan_id=plan.plan_id, **kwargs), user
    )


class TestCreateSubscription:
    async def test_self_serve_creation_is_active(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        assert subscription.subscription_id.startswith("sub_")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.user_id == customer.user_id
        assert subscription.start_date == NOW
        assert subscription.end_date == datetime(2024, 4, 1, 12, 0, tzinfo=UTC)
        assert subscription.pricing.base_price == Decimal("30.00")
        assert subscription.pricing.tax_amount == Decimal("2.40")
        assert subscription.pricing.total_amount == Decimal("32.40")
        assert subscription.payment_history == []
        assert subscription.version == 1

    async def test_created_history_entry(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        assert len(subscription.service_history) == 1
        entry = subscription.service_history[0]
        assert entry.type == ServiceEventType.CREATED
        assert entry.performed_by == customer.user_id
        assert entry.timestamp == NOW
        assert entry.metadata["plan_name"] == "Basic 100"
        assert entry.metadata["billing_cycle"] == "monthly"

    async def test_provisioning_request_is_pending(
        self, subscription_service, customer, basic_plan
    ):
        subscription = await _subscribe(
            subscription_service,
            customer,
            basic_plan,
            activate_immediately=False,
            installation_address="1 Fiber Way",
        )

        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.installation.address == "1 Fiber Way"
        assert subscription.installation.scheduled is False

    async def test_yearly_with_discount(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(
            subscription_service,
            customer,
            basic_plan,
            billing_cycle=BillingCycle.YEARLY,
            discount_code="LAUNCH",
        )

        # Yearly default price is 30 * 12 * 0.9 = 324.00
        assert subscription.pricing.base_price == Decimal("324.00")
        assert subscription.pricing.discount_applied == Decimal("32.40")
        assert subscription.pricing.final_price == Decimal("291.60")
        assert subscription.pricing.tax_amount == Decimal("23.33")
        assert subscription.pricing.total_amount == Decimal("314.93")
        assert subscription.discount_code == "LAUNCH"
        assert subscription.end_date == datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    async def test_explicit_start_date(self, subscription_service, customer, basic_plan):
        start = datetime(2024, 1, 31, tzinfo=UTC)
        subscription = await _subscribe(
            subscription_service, customer, basic_plan, start_date=start
        )

        assert subscription.start_date == start
        assert subscription.end_date == datetime(2024, 2, 29, tzinfo=UTC)

    async def test_unknown_plan(self, subscription_service, customer):
        with pytest.raises(PlanNotFoundError, match="Plan not found or not available"):
            await subscription_service.create_subscription(
                SubscriptionCreateRequest(plan_id="plan_missing"), customer
            )

    async def test_unavailable_plan(self, subscription_service, customer, retired_plan):
        with pytest.raises(PlanNotFoundError):
            await _subscribe(subscription_service, customer, retired_plan)

    async def test_second_active_subscription_on_same_plan_conflicts(
        self, subscription_service, customer, basic_plan
    ):
        await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(SubscriptionConflictError) as exc_info:
            await _subscribe(subscription_service, customer, basic_plan)

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["plan_id"] == basic_plan.plan_id

    async def test_other_user_may_take_same_plan(
        self, subscription_service, customer, other_customer, basic_plan
    ):
        await _subscribe(subscription_service, customer, basic_plan)
        subscription = await _subscribe(subscription_service, other_customer, basic_plan)

        assert subscription.user_id == other_customer.user_id

    async def test_admin_subscribes_on_behalf(
        self, subscription_service, admin_user, customer, basic_plan
    ):
        subscription = await _subscribe(
            subscription_service, admin_user, basic_plan, user_id=customer.user_id
        )

        assert subscription.user_id == customer.user_id
        assert subscription.service_history[0].performed_by == admin_user.user_id

    async def test_customer_cannot_subscribe_someone_else(
        self, subscription_service, customer, other_customer, basic_plan
    ):
        with pytest.raises(SubscriptionAccessDeniedError):
            await _subscribe(
                subscription_service, customer, basic_plan, user_id=other_customer.user_id
            )


class TestQueries:
    async def test_get_subscription(self, subscription_service, customer, basic_plan):
        created = await _subscribe(subscription_service, customer, basic_plan)

        fetched = await subscription_service.get_subscription(created.subscription_id, customer)

        assert fetched == created

    async def test_get_missing(self, subscription_service, customer):
        with pytest.raises(SubscriptionNotFoundError):
            await subscription_service.get_subscription("sub_missing", customer)

    async def test_other_user_denied(
        self, subscription_service, customer, other_customer, basic_plan
    ):
        created = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(SubscriptionAccessDeniedError) as exc_info:
            await subscription_service.get_subscription(created.subscription_id, other_customer)
        assert exc_info.value.status_code == 403

    async def test_admin_can_read_any(self, subscription_service, customer, admin_user, basic_plan):
        created = await _subscribe(subscription_service, customer, basic_plan)

        fetched = await subscription_service.get_subscription(created.subscription_id, admin_user)
        assert fetched.subscription_id == created.subscription_id

    async def test_list_is_scoped_and_paginated(
        self, subscription_service, customer, other_customer, clock, make_plan
    ):
        plans = [await make_plan(f"Plan {i}", f"{20 + i}.00") for i in range(3)]
        for plan in plans:
            await _subscribe(subscription_service, customer, plan)
            clock.advance(minutes=1)
        await _subscribe(subscription_service, other_customer, plans[0])

        first_page = await subscription_service.list_subscriptions(customer, page=1, page_size=2)

        assert first_page.total == 3
        assert first_page.pages == 2
        assert [s.plan_id for s in first_page.subscriptions] == [
            plans[2].plan_id,
            plans[1].plan_id,
        ]

        second_page = await subscription_service.list_subscriptions(customer, page=2, page_size=2)
        assert [s.plan_id for s in second_page.subscriptions] == [plans[0].plan_id]

    async def test_list_filters_by_status(
        self, subscription_service, customer, basic_plan, premium_plan
    ):
        await _subscribe(subscription_service, customer, basic_plan)
        await _subscribe(subscription_service, customer, premium_plan, activate_immediately=False)

        pending = await subscription_service.list_subscriptions(
            customer, status=SubscriptionStatus.PENDING
        )

        assert pending.total == 1
        assert pending.subscriptions[0].plan_id == premium_plan.plan_id


class TestActivation:
    async def test_admin_activates_pending(
        self, subscription_service, customer, admin_user, basic_plan
    ):
        pending = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )

        activated = await subscription_service.activate_subscription(
            pending.subscription_id, admin_user
        )

        assert activated.status == SubscriptionStatus.ACTIVE
        assert activated.service_history[-1].type == ServiceEventType.ACTIVATED
        assert activated.version == pending.version + 1

    async def test_activating_active_is_a_noop(
        self, subscription_service, customer, admin_user, basic_plan
    ):
        active = await _subscribe(subscription_service, customer, basic_plan)

        result = await subscription_service.activate_subscription(
            active.subscription_id, admin_user
        )

        assert result.status == SubscriptionStatus.ACTIVE
        assert len(result.service_history) == 1

    async def test_customer_cannot_activate(self, subscription_service, customer, basic_plan):
        pending = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )

        with pytest.raises(SubscriptionAccessDeniedError):
            await subscription_service.activate_subscription(pending.subscription_id, customer)

    async def test_activation_respects_one_active_per_plan(
        self, subscription_service, customer, admin_user, basic_plan
    ):
        pending = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )
        await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(SubscriptionConflictError):
            await subscription_service.activate_subscription(pending.subscription_id, admin_user)


class TestUpgrade:
    async def test_prorated_upgrade(
        self, subscription_service, customer, basic_plan, premium_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        # 15 of the 30 proration days left before 2024-04-01 12:00
        clock.now = datetime(2024, 3, 17, 12, 0, tzinfo=UTC)

        result = await subscription_service.upgrade_plan(
            subscription.subscription_id,
            PlanUpgradeRequest(new_plan_id=premium_plan.plan_id),
            customer,
        )

        assert result.proration.remaining_days == 15
        assert result.proration.prorated_credit == Decimal("15.00")
        assert result.proration.prorated_new_cost == Decimal("30.00")
        assert result.additional_cost == Decimal("15.00")
        assert result.old_plan_id == basic_plan.plan_id
        assert result.new_plan_id == premium_plan.plan_id

        upgraded = result.subscription
        assert upgraded.plan_id == premium_plan.plan_id
        assert upgraded.pricing.base_price == Decimal("60.00")
        assert upgraded.pricing.final_price == Decimal("60.00")
        assert upgraded.pricing.discount_applied == Decimal("0")
        assert upgraded.pricing.tax_amount == Decimal("2.40")
        assert upgraded.pricing.total_amount == Decimal("62.40")
        assert upgraded.status == SubscriptionStatus.ACTIVE

        entry = upgraded.service_history[-1]
        assert entry.type == ServiceEventType.UPGRADED
        assert entry.metadata["old_plan_name"] == "Basic 100"
        assert entry.metadata["new_plan_name"] == "Premium 500"
        assert entry.metadata["additional_cost"] == "15.00"

    async def test_upgrade_keeps_total_consistent(
        self, subscription_service, customer, basic_plan, premium_plan
    ):
        subscription = await _subscribe(
            subscription_service, customer, basic_plan, discount_code="SAVE"
        )

        result = await subscription_service.upgrade_plan(
            subscription.subscription_id,
            PlanUpgradeRequest(new_plan_id=premium_plan.plan_id),
            customer,
        )

        pricing = result.subscription.pricing
        assert pricing.total_amount == pricing.final_price + pricing.tax_amount

    @pytest.mark.parametrize("target_price", ["30.00", "25.00"])
    async def test_equal_or_cheaper_plan_rejected(
        self, subscription_service, customer, basic_plan, make_plan, target_price
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        target = await make_plan("Same Or Less", target_price)

        with pytest.raises(InvalidTransitionError, match="higher tier"):
            await subscription_service.upgrade_plan(
                subscription.subscription_id,
                PlanUpgradeRequest(new_plan_id=target.plan_id),
                customer,
            )

        unchanged = await subscription_service.get_subscription(
            subscription.subscription_id, customer
        )
        assert unchanged.plan_id == basic_plan.plan_id
        assert len(unchanged.service_history) == 1

    async def test_only_active_can_upgrade(
        self, subscription_service, customer, basic_plan, premium_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        await subscription_service.pause_subscription(subscription.subscription_id, customer)

        with pytest.raises(InvalidTransitionError, match="Can only upgrade active subscriptions"):
            await subscription_service.upgrade_plan(
                subscription.subscription_id,
                PlanUpgradeRequest(new_plan_id=premium_plan.plan_id),
                customer,
            )

    async def test_currency_mismatch(self, subscription_service, customer, basic_plan, euro_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(CurrencyMismatchError):
            await subscription_service.upgrade_plan(
                subscription.subscription_id,
                PlanUpgradeRequest(new_plan_id=euro_plan.plan_id),
                customer,
            )

    async def test_unavailable_target(
        self, subscription_service, customer, basic_plan, retired_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(PlanNotFoundError):
            await subscription_service.upgrade_plan(
                subscription.subscription_id,
                PlanUpgradeRequest(new_plan_id=retired_plan.plan_id),
                customer,
            )


class TestDowngrade:
    async def test_immediate_downgrade(
        self, subscription_service, customer, basic_plan, economy_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        result = await subscription_service.downgrade_plan(
            subscription.subscription_id,
            PlanDowngradeRequest(new_plan_id=economy_plan.plan_id),
            customer,
        )

        assert result.scheduled is False
        assert result.proration is None
        downgraded = result.subscription
        assert downgraded.plan_id == economy_plan.plan_id
        assert downgraded.pricing.final_price == Decimal("20.00")
        assert downgraded.pricing.total_amount == Decimal("22.40")
        assert downgraded.service_history[-1].type == ServiceEventType.DOWNGRADED

    async def test_scheduled_downgrade_leaves_plan_untouched(
        self, subscription_service, customer, basic_plan, economy_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        effective = NOW + timedelta(days=10)

        result = await subscription_service.downgrade_plan(
            subscription.subscription_id,
            PlanDowngradeRequest(new_plan_id=economy_plan.plan_id, effective_date=effective),
            customer,
        )

        assert result.scheduled is True
        assert result.effective_date == effective
        scheduled = result.subscription
        assert scheduled.plan_id == basic_plan.plan_id
        assert scheduled.pricing == subscription.pricing
        entry = scheduled.service_history[-1]
        assert entry.type == ServiceEventType.DOWNGRADE_SCHEDULED
        assert entry.metadata["scheduled"] is True
        assert entry.metadata["effective_date"] == effective.isoformat()

    async def test_past_effective_date_applies_now(
        self, subscription_service, customer, basic_plan, economy_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        result = await subscription_service.downgrade_plan(
            subscription.subscription_id,
            PlanDowngradeRequest(
                new_plan_id=economy_plan.plan_id, effective_date=NOW - timedelta(days=1)
            ),
            customer,
        )

        assert result.scheduled is False
        assert result.subscription.plan_id == economy_plan.plan_id

    async def test_more_expensive_plan_rejected(
        self, subscription_service, customer, basic_plan, premium_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(InvalidTransitionError, match="lower tier"):
            await subscription_service.downgrade_plan(
                subscription.subscription_id,
                PlanDowngradeRequest(new_plan_id=premium_plan.plan_id),
                customer,
            )


class TestCancellation:
    async def _record_current_usage(self, service, admin, subscription_id, gigabytes):
        await service.record_usage(
            subscription_id, UsageUpdateRequest(data_used=Decimal(gigabytes)), admin
        )

    async def test_early_low_usage_cancellation_is_refunded(
        self, subscription_service, customer, admin_user, basic_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        # 25 GB of 500 GB = 5%
        await self._record_current_usage(
            subscription_service, admin_user, subscription.subscription_id, "25"
        )
        clock.advance(days=10)

        result = await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="Moving away"), customer
        )

        assert result.refund_eligible is True
        assert result.refund_amount == Decimal("32.40")
        cancelled = result.subscription
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancellation.reason == "Moving away"
        assert cancelled.cancellation.requested_by == customer.user_id
        assert cancelled.cancellation.effective_date == clock.now
        assert cancelled.end_date == subscription.end_date
        entry = cancelled.service_history[-1]
        assert entry.type == ServiceEventType.CANCELLED
        assert entry.metadata["refund_eligible"] is True
        assert entry.metadata["refund_amount"] == "32.40"

    async def test_high_usage_cancellation_is_not_refunded(
        self, subscription_service, customer, admin_user, basic_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        # 75 GB of 500 GB = 15%
        await self._record_current_usage(
            subscription_service, admin_user, subscription.subscription_id, "75"
        )
        clock.advance(days=10)

        result = await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="Too slow"), customer
        )

        assert result.refund_eligible is False
        assert result.refund_amount == Decimal("0")

    async def test_late_cancellation_is_not_refunded(
        self, subscription_service, customer, premium_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, premium_plan)
        clock.advance(days=31)

        result = await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="No longer needed"), customer
        )

        assert result.refund_eligible is False

    async def test_explicit_effective_date(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        effective = NOW + timedelta(days=5)

        result = await subscription_service.cancel_subscription(
            subscription.subscription_id,
            CancellationRequest(reason="Switching", effective_date=effective),
            customer,
        )

        assert result.subscription.cancellation.effective_date == effective
        assert result.subscription.cancellation.request_date == NOW

    async def test_cancel_twice_conflicts(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="first"), customer
        )

        with pytest.raises(SubscriptionConflictError, match="already cancelled"):
            await subscription_service.cancel_subscription(
                subscription.subscription_id, CancellationRequest(reason="second"), customer
            )

    async def test_cancelled_subscription_cannot_change_plan(
        self, subscription_service, customer, basic_plan, premium_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="done"), customer
        )

        with pytest.raises(InvalidTransitionError):
            await subscription_service.upgrade_plan(
                subscription.subscription_id,
                PlanUpgradeRequest(new_plan_id=premium_plan.plan_id),
                customer,
            )

    async def test_pending_can_be_cancelled(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )

        result = await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="changed mind"), customer
        )

        assert result.subscription.status == SubscriptionStatus.CANCELLED


class TestRenewalAndExpiry:
    async def test_renew_active_extends_from_previous_end(
        self, subscription_service, customer, basic_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        clock.advance(days=20)

        renewed = await subscription_service.renew_subscription(
            subscription.subscription_id, customer
        )

        assert renewed.end_date == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        assert len(renewed.payment_history) == 1
        payment = renewed.payment_history[0]
        assert payment.amount == Decimal("32.40")
        assert payment.method == "auto-renewal"
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.invoice_number.startswith(f"INV-{int(clock.now.timestamp() * 1000)}-")
        assert renewed.service_history[-1].type == ServiceEventType.RENEWED

    async def test_expiry_sweep_then_renewal(
        self, subscription_service, customer, basic_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        clock.now = datetime(2024, 4, 2, tzinfo=UTC)

        expired_ids = await subscription_service.expire_lapsed_subscriptions()

        assert expired_ids == [subscription.subscription_id]
        expired = await subscription_service.get_subscription(
            subscription.subscription_id, customer
        )
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.service_history[-1].type == ServiceEventType.EXPIRED
        assert expired.service_history[-1].performed_by == "system"

        renewed = await subscription_service.renew_subscription(
            subscription.subscription_id, customer
        )

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.end_date == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    async def test_sweep_skips_current_and_non_active(
        self, subscription_service, customer, basic_plan, premium_plan, clock
    ):
        await _subscribe(subscription_service, customer, basic_plan, activate_immediately=False)
        await _subscribe(
            subscription_service, customer, premium_plan, billing_cycle=BillingCycle.YEARLY
        )
        clock.now = datetime(2024, 4, 2, tzinfo=UTC)

        assert await subscription_service.expire_lapsed_subscriptions() == []

    async def test_expired_renewal_rechecks_active_duplicate(
        self, subscription_service, customer, basic_plan, clock
    ):
        lapsed = await _subscribe(subscription_service, customer, basic_plan)
        clock.now = datetime(2024, 4, 2, tzinfo=UTC)
        await subscription_service.expire_lapsed_subscriptions()
        await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(SubscriptionConflictError):
            await subscription_service.renew_subscription(lapsed.subscription_id, customer)

    async def test_pending_cannot_renew(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )

        with pytest.raises(InvalidTransitionError):
            await subscription_service.renew_subscription(subscription.subscription_id, customer)


class TestPauseResume:
    async def test_pause_then_resume(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        original_history = subscription.service_history

        paused = await subscription_service.pause_subscription(
            subscription.subscription_id, customer, reason="Travelling"
        )
        assert paused.status == SubscriptionStatus.SUSPENDED
        assert paused.service_history[-1].type == ServiceEventType.SUSPENDED
        assert paused.service_history[-1].description == "Travelling"

        resumed = await subscription_service.resume_subscription(
            subscription.subscription_id, customer
        )

        assert resumed.status == SubscriptionStatus.ACTIVE
        assert len(resumed.service_history) == len(original_history) + 2
        assert resumed.service_history[: len(original_history)] == original_history
        assert resumed.service_history[-1].type == ServiceEventType.RESUMED

    async def test_pause_default_description(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        paused = await subscription_service.pause_subscription(
            subscription.subscription_id, customer
        )

        assert paused.service_history[-1].description == "User request"

    async def test_resume_requires_suspended(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(InvalidTransitionError, match="Can only resume suspended"):
            await subscription_service.resume_subscription(subscription.subscription_id, customer)

    async def test_pause_requires_active(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(
            subscription_service, customer, basic_plan, activate_immediately=False
        )

        with pytest.raises(InvalidTransitionError):
            await subscription_service.pause_subscription(subscription.subscription_id, customer)


class TestUsage:
    async def test_current_month_usage(
        self, subscription_service, customer, admin_user, basic_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        summary = await subscription_service.record_usage(
            subscription.subscription_id, UsageUpdateRequest(data_used=Decimal("125")), admin_user
        )

        assert summary.current_month.data_used == Decimal("125")
        assert summary.current_month.last_updated == NOW
        assert summary.usage_percentage == Decimal("25.00")
        assert summary.plan_limit == "500 GB"

    async def test_history_rows_are_upserted(
        self, subscription_service, customer, admin_user, basic_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        sub_id = subscription.subscription_id

        await subscription_service.record_usage(
            sub_id, UsageUpdateRequest(data_used=Decimal("300"), month=2, year=2024), admin_user
        )
        await subscription_service.record_usage(
            sub_id, UsageUpdateRequest(data_used=Decimal("100"), month=1, year=2024), admin_user
        )
        summary = await subscription_service.record_usage(
            sub_id, UsageUpdateRequest(data_used=Decimal("320"), month=2, year=2024), admin_user
        )

        assert [(row.month, row.year, row.data_used) for row in summary.history] == [
            (1, 2024, Decimal("100")),
            (2, 2024, Decimal("320")),
        ]
        assert summary.current_month.data_used == Decimal("0")

    async def test_unlimited_plan_usage(self, subscription_service, customer, premium_plan):
        subscription = await _subscribe(subscription_service, customer, premium_plan)

        summary = await subscription_service.get_usage(subscription.subscription_id, customer)

        assert summary.usage_percentage == Decimal("0")
        assert summary.plan_limit == "Unlimited"

    async def test_customer_cannot_record_usage(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        with pytest.raises(SubscriptionAccessDeniedError):
            await subscription_service.record_usage(
                subscription.subscription_id, UsageUpdateRequest(data_used=Decimal("1")), customer
            )


class TestInstallationAndPayments:
    async def test_schedule_installation(self, subscription_service, customer, basic_plan):
        subscription = await _subscribe(
            subscription_service,
            customer,
            basic_plan,
            activate_immediately=False,
            installation_address="1 Fiber Way",
        )
        visit = NOW + timedelta(days=3)

        scheduled = await subscription_service.schedule_installation(
            subscription.subscription_id,
            InstallationScheduleRequest(scheduled_date=visit, instructions="Ring twice"),
            customer,
        )

        assert scheduled.status == SubscriptionStatus.PENDING
        assert scheduled.installation.scheduled is True
        assert scheduled.installation.scheduled_date == visit
        assert scheduled.installation.address == "1 Fiber Way"
        assert scheduled.installation.instructions == "Ring twice"
        assert scheduled.service_history[-1].type == ServiceEventType.INSTALLATION_SCHEDULED

    async def test_no_installation_after_cancellation(
        self, subscription_service, customer, basic_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)
        await subscription_service.cancel_subscription(
            subscription.subscription_id, CancellationRequest(reason="bye"), customer
        )

        with pytest.raises(InvalidTransitionError):
            await subscription_service.schedule_installation(
                subscription.subscription_id,
                InstallationScheduleRequest(scheduled_date=NOW + timedelta(days=1)),
                customer,
            )

    async def test_record_payment_and_history(
        self, subscription_service, customer, basic_plan, clock
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        first = await subscription_service.record_payment(
            subscription.subscription_id,
            PaymentCreateRequest(amount=Decimal("32.40"), method="card", transaction_id="txn_1"),
            customer,
        )
        second = await subscription_service.record_payment(
            subscription.subscription_id,
            PaymentCreateRequest(amount=Decimal("10.00"), method="upi"),
            customer,
        )

        assert first.status == PaymentStatus.COMPLETED
        assert first.transaction_id == "txn_1"
        # Both payments land on the same clock instant
        prefix = f"INV-{int(clock.now.timestamp() * 1000)}-"
        assert first.invoice_number.startswith(prefix)
        assert second.invoice_number.startswith(prefix)
        assert first.invoice_number != second.invoice_number

        history = await subscription_service.get_payment_history(
            subscription.subscription_id, customer
        )
        assert [payment.amount for payment in history] == [Decimal("32.40"), Decimal("10.00")]


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """Sessions over a file-backed database so each one gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'broadbandx.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    finally:
        await engine.dispose()


async def _shared_plan(session_maker, billing_settings):
    async with session_maker() as session:
        return await PlanService(session, billing_settings).create_plan(
            PlanCreateRequest(
                name="Basic 100",
                pricing=PlanPricingInput(monthly=Decimal("30.00")),
                features=PlanFeatures(speed=PlanSpeed(download=100, upload=20)),
            )
        )


class TestConcurrency:
    async def test_stale_write_is_rejected(
        self, file_session_maker, billing_settings, clock, customer
    ):
        plan = await _shared_plan(file_session_maker, billing_settings)
        async with file_session_maker() as session:
            service = SubscriptionService(session, billing_settings=billing_settings, clock=clock)
            subscription = await _subscribe(service, customer, plan)

        async with file_session_maker() as session_a, file_session_maker() as session_b:
            service_a = SubscriptionService(
                session_a, billing_settings=billing_settings, clock=clock
            )
            service_b = SubscriptionService(
                session_b, billing_settings=billing_settings, clock=clock
            )
            loaded = await service_b.get_subscription(subscription.subscription_id, customer)
            paused = await service_a.pause_subscription(subscription.subscription_id, customer)

            with pytest.raises(ConcurrentModificationError) as exc_info:
                await service_b.cancel_subscription(
                    subscription.subscription_id, CancellationRequest(reason="Moving"), customer
                )

        assert (loaded.version, paused.version) == (1, 2)
        assert exc_info.value.status_code == 409
        assert exc_info.value.context == {"subscription_id": subscription.subscription_id}

        async with file_session_maker() as session:
            service = SubscriptionService(session, billing_settings=billing_settings, clock=clock)
            stored = await service.get_subscription(subscription.subscription_id, customer)
        assert stored.status == SubscriptionStatus.SUSPENDED
        assert stored.cancellation is None

    async def test_concurrent_creates_leave_one_active(
        self, file_session_maker, billing_settings, clock, customer
    ):
        plan = await _shared_plan(file_session_maker, billing_settings)

        async def _attempt():
            async with file_session_maker() as session:
                service = SubscriptionService(
                    session, billing_settings=billing_settings, clock=clock
                )
                return await _subscribe(service, customer, plan)

        results = await asyncio.gather(_attempt(), _attempt(), return_exceptions=True)

        created = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, SubscriptionConflictError)]
        assert len(created) == 1
        assert len(rejected) == 1

        async with file_session_maker() as session:
            active = await session.scalar(
                select(func.count())
                .select_from(SubscriptionEntity)
                .where(
                    SubscriptionEntity.user_id == customer.user_id,
                    SubscriptionEntity.plan_id == plan.plan_id,
                    SubscriptionEntity.status == SubscriptionStatus.ACTIVE.value,
                )
            )
        assert active == 1

    async def test_store_rejects_duplicate_active_after_stale_check(
        self, subscription_service, async_session, customer, basic_plan, monkeypatch
    ):
        await _subscribe(subscription_service, customer, basic_plan)
        # The application check ran before the other request committed
        monkeypatch.setattr(subscription_service, "_ensure_no_active_duplicate", AsyncMock())

        with pytest.raises(SubscriptionConflictError) as exc_info:
            await _subscribe(subscription_service, customer, basic_plan)

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["plan_id"] == basic_plan.plan_id

        active = await async_session.scalar(
            select(func.count())
            .select_from(SubscriptionEntity)
            .where(SubscriptionEntity.status == SubscriptionStatus.ACTIVE.value)
        )
        assert active == 1

    async def test_each_transition_bumps_version(
        self, subscription_service, customer, basic_plan
    ):
        subscription = await _subscribe(subscription_service, customer, basic_plan)

        paused = await subscription_service.pause_subscription(
            subscription.subscription_id, customer
        )
        resumed = await subscription_service.resume_subscription(
            subscription.subscription_id, customer
        )

        assert (subscription.version, paused.version, resumed.version) == (1, 2, 3)
