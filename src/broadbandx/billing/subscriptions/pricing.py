"""
Pricing and proration arithmetic for subscriptions.

Pure functions: callers pass ``now`` and the billing policy explicitly, and
every amount is rounded half-up to the currency's minor unit.
"""

import calendar
import math
from datetime import datetime, timedelta
from decimal import Decimal

from broadbandx.billing.catalog.models import BillingCycle, DataLimit
from broadbandx.billing.money_utils import money_handler
from broadbandx.billing.subscriptions.models import PricingSnapshot, ProrationResult
from broadbandx.settings import BillingSettings

ZERO = Decimal("0")
HUNDRED = Decimal("100")
ONE_DAY = timedelta(days=1)


# ============================================================
# Billing periods
# ============================================================


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamped to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_period(value: datetime, billing_cycle: BillingCycle) -> datetime:
    """``value`` moved forward by one billing period."""
    if billing_cycle == BillingCycle.YEARLY:
        return add_months(value, 12)
    return add_months(value, 1)


def period_days(billing_cycle: BillingCycle, billing_settings: BillingSettings) -> int:
    """Nominal period length used for proration (30 or 365 by default)."""
    if billing_cycle == BillingCycle.YEARLY:
        return billing_settings.yearly_period_days
    return billing_settings.monthly_period_days


def days_remaining(end_date: datetime, now: datetime) -> int:
    """Whole days left in the period; a started day counts, never negative."""
    seconds = (end_date - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / ONE_DAY.total_seconds())


def days_since(start_date: datetime, now: datetime) -> int:
    """Completed days since ``start_date``."""
    return math.floor((now - start_date).total_seconds() / ONE_DAY.total_seconds())


# ============================================================
# Price snapshots
# ============================================================


def _round(amount: Decimal, currency: str) -> Decimal:
    return money_handler.round_amount(amount, currency)


def _with_tax(
    base_price: Decimal,
    discount_applied: Decimal,
    final_price: Decimal,
    tax_amount: Decimal,
    currency: str,
) -> PricingSnapshot:
    return PricingSnapshot(
        base_price=base_price,
        discount_applied=discount_applied,
        final_price=final_price,
        tax_amount=tax_amount,
        total_amount=_round(final_price + tax_amount, currency),
        currency=currency,
    )


def calculate_pricing(
    base_price: Decimal,
    currency: str,
    billing_settings: BillingSettings,
    discount_code: str | None = None,
) -> PricingSnapshot:
    """Initial price snapshot for a new subscription.

    Any discount code takes the flat ``discount_rate`` off the base price;
    code validation happens upstream of this engine.
    """
    base_price = _round(base_price, currency)
    discount = ZERO
    if discount_code:
        discount = _round(base_price * billing_settings.discount_rate, currency)
    final_price = base_price - discount
    tax_amount = _round(final_price * billing_settings.tax_rate, currency)
    return _with_tax(base_price, discount, final_price, tax_amount, currency)


def reprice_for_plan(snapshot: PricingSnapshot, new_price: Decimal) -> PricingSnapshot:
    """Snapshot after a plan swap.

    The new price replaces base and final price; the tax captured earlier is
    carried over unchanged and any creation discount is dropped.
    """
    new_price = _round(new_price, snapshot.currency)
    return _with_tax(new_price, ZERO, new_price, snapshot.tax_amount, snapshot.currency)


def calculate_upgrade_proration(
    current_final_price: Decimal,
    new_period_price: Decimal,
    remaining_days: int,
    total_days: int,
    currency: str,
) -> ProrationResult:
    """Credit for the unused part of the current price against the new price."""
    remaining = max(0, min(remaining_days, total_days))
    credit = _round(current_final_price / total_days * remaining, currency)
    new_cost = _round(new_period_price / total_days * remaining, currency)
    return ProrationResult(
        remaining_days=remaining,
        total_days=total_days,
        prorated_credit=credit,
        prorated_new_cost=new_cost,
        additional_cost=new_cost - credit,
    )


# ============================================================
# Usage and refunds
# ============================================================


def usage_percentage(data_used: Decimal, data_limit: DataLimit) -> Decimal:
    """Current-month usage as a percentage of the allowance; 0 when unlimited."""
    limit = data_limit.limit_in_gb
    if limit is None or limit <= 0:
        return ZERO
    return (data_used / limit * HUNDRED).quantize(Decimal("0.01"))


def evaluate_refund(
    snapshot: PricingSnapshot,
    start_date: datetime,
    current_usage_percentage: Decimal,
    now: datetime,
    billing_settings: BillingSettings,
) -> tuple[bool, Decimal]:
    """Refund eligibility and amount for a cancellation at ``now``.

    Eligible within ``refund_window_days`` of the start while usage stays
    below ``refund_usage_threshold_percent``; the refund is the full total.
    """
    eligible = (
        days_since(start_date, now) <= billing_settings.refund_window_days
        and current_usage_percentage < billing_settings.refund_usage_threshold_percent
    )
    return eligible, (snapshot.total_amount if eligible else ZERO)
