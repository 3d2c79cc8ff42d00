"""
Subscription domain models, request payloads and operation results.

Every lifecycle operation takes its own request model so the payload is
validated in full before anything is mutated.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from broadbandx.billing.catalog.models import BillingCycle
from broadbandx.db import ensure_utc


class SubscriptionStatus(str, Enum):
    """Subscription status. Cancelled is terminal; expired can be renewed."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ServiceEventType(str, Enum):
    """Service history entry types, one per lifecycle transition."""

    CREATED = "created"
    ACTIVATED = "activated"
    UPGRADED = "upgraded"
    DOWNGRADE_SCHEDULED = "downgrade"
    DOWNGRADED = "downgraded"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    RENEWED = "renewed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INSTALLATION_SCHEDULED = "installation-scheduled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


AUTO_RENEWAL_METHOD = "auto-renewal"
SYSTEM_ACTOR = "system"


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


# ============================================================
# Domain models
# ============================================================


class PricingSnapshot(BaseModel):
    """Prices captured at the last pricing-affecting transition."""

    base_price: Decimal
    discount_applied: Decimal = Decimal("0")
    final_price: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str = "USD"


class CancellationRecord(BaseModel):
    request_date: UTCDateTime
    effective_date: UTCDateTime
    reason: str
    requested_by: str
    refund_eligible: bool
    refund_amount: Decimal


class InstallationRecord(BaseModel):
    address: str | None = None
    scheduled: bool = False
    scheduled_date: UTCDateTime | None = None
    instructions: str | None = None


class ServiceHistoryEntry(BaseModel):
    """One audit entry. Entries are only ever appended."""

    timestamp: UTCDateTime
    type: ServiceEventType
    description: str
    performed_by: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentRecord(BaseModel):
    date: UTCDateTime
    amount: Decimal
    method: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    invoice_number: str
    transaction_id: str | None = None


class CurrentMonthUsage(BaseModel):
    data_used: Decimal = Decimal("0")
    last_updated: UTCDateTime | None = None


class MonthlyUsage(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000)
    data_used: Decimal = Field(ge=0)


class UsageData(BaseModel):
    """Data consumption in GB."""

    current_month: CurrentMonthUsage = Field(default_factory=CurrentMonthUsage)
    history: list[MonthlyUsage] = Field(default_factory=list)


class Subscription(BaseModel):
    """A customer's subscription to one plan."""

    subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    start_date: UTCDateTime
    end_date: UTCDateTime
    pricing: PricingSnapshot
    discount_code: str | None = None
    cancellation: CancellationRecord | None = None
    installation: InstallationRecord = Field(default_factory=InstallationRecord)
    service_history: list[ServiceHistoryEntry] = Field(default_factory=list)
    payment_history: list[PaymentRecord] = Field(default_factory=list)
    usage: UsageData = Field(default_factory=UsageData)
    version: int = 1
    created_at: UTCDateTime | None = None
    updated_at: UTCDateTime | None = None

    @model_validator(mode="after")
    def check_period(self) -> "Subscription":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


# ============================================================
# Requests
# ============================================================


class SubscriptionCreateRequest(BaseModel):
    """Subscribe a user to a plan.

    ``activate_immediately`` is the self-serve path; otherwise the
    subscription waits in ``pending`` for provisioning.
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    plan_id: str = Field(validation_alias=AliasChoices("plan_id", "planId"), min_length=1)
    billing_cycle: BillingCycle = Field(
        BillingCycle.MONTHLY, validation_alias=AliasChoices("billing_cycle", "billingCycle")
    )
    discount_code: str | None = Field(
        None, max_length=50, validation_alias=AliasChoices("discount_code", "discountCode")
    )
    start_date: UTCDateTime | None = Field(
        None, validation_alias=AliasChoices("start_date", "startDate")
    )
    installation_address: str | None = Field(
        None,
        max_length=500,
        validation_alias=AliasChoices("installation_address", "installationAddress"),
    )
    activate_immediately: bool = Field(
        False, validation_alias=AliasChoices("activate_immediately", "activateImmediately")
    )
    user_id: str | None = Field(
        None,
        validation_alias=AliasChoices("user_id", "userId"),
        description="Subscribe on behalf of another user (admin only)",
    )

    @field_validator("discount_code")
    @classmethod
    def blank_code_is_none(cls, v: str | None) -> str | None:
        return v or None


class PlanUpgradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_plan_id: str = Field(
        min_length=1, validation_alias=AliasChoices("new_plan_id", "newPlanId")
    )


class PlanDowngradeRequest(BaseModel):
    """Downgrade now, or at ``effective_date`` when that lies in the future."""

    model_config = ConfigDict(populate_by_name=True)

    new_plan_id: str = Field(
        min_length=1, validation_alias=AliasChoices("new_plan_id", "newPlanId")
    )
    effective_date: UTCDateTime | None = Field(
        None, validation_alias=AliasChoices("effective_date", "effectiveDate")
    )


class CancellationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    reason: str = Field(min_length=1, max_length=500)
    effective_date: UTCDateTime | None = Field(
        None, validation_alias=AliasChoices("effective_date", "effectiveDate")
    )


class PauseRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class UsageUpdateRequest(BaseModel):
    """Set current-month usage, or a past month's usage when month and year are given."""

    model_config = ConfigDict(populate_by_name=True)

    data_used: Decimal = Field(ge=0, validation_alias=AliasChoices("data_used", "dataUsed"))
    month: int | None = Field(None, ge=1, le=12)
    year: int | None = Field(None, ge=2000)

    @model_validator(mode="after")
    def month_and_year_together(self) -> "UsageUpdateRequest":
        if (self.month is None) != (self.year is None):
            raise ValueError("month and year must be given together")
        return self


class InstallationScheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    scheduled_date: UTCDateTime = Field(
        validation_alias=AliasChoices("scheduled_date", "scheduledDate")
    )
    address: str | None = Field(None, max_length=500)
    instructions: str | None = Field(None, max_length=1000)


class PaymentCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(gt=0)
    method: str = Field(
        min_length=1, max_length=50, validation_alias=AliasChoices("method", "paymentMethod")
    )
    transaction_id: str | None = Field(
        None, max_length=100, validation_alias=AliasChoices("transaction_id", "transactionId")
    )


# ============================================================
# Results
# ============================================================


class ProrationResult(BaseModel):
    """Upgrade proration. ``additional_cost`` is reported, not charged."""

    remaining_days: int
    total_days: int
    prorated_credit: Decimal
    prorated_new_cost: Decimal
    additional_cost: Decimal


class PlanChangeResult(BaseModel):
    subscription: Subscription
    old_plan_id: str
    new_plan_id: str
    scheduled: bool = False
    effective_date: UTCDateTime
    proration: ProrationResult | None = None
    additional_cost: Decimal = Decimal("0")


class CancellationResult(BaseModel):
    subscription: Subscription
    refund_eligible: bool
    refund_amount: Decimal


class UsageSummary(BaseModel):
    current_month: CurrentMonthUsage
    history: list[MonthlyUsage]
    usage_percentage: Decimal
    plan_limit: str


class SubscriptionListResponse(BaseModel):
    subscriptions: list[Subscription]
    total: int
    page: int
    page_size: int
    pages: int
