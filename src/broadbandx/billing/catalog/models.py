"""
Plan catalog models.

Plans are read-only inputs to the subscription engine: it only needs their
status, their price for a billing cycle and their data allowance.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from broadbandx.billing.money_utils import SUPPORTED_CURRENCIES

GB_PER_TB = Decimal("1024")


class BillingCycle(str, Enum):
    """Recurrence unit fixing period length and price tier."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanCategory(str, Enum):
    RESIDENTIAL = "residential"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class SpeedUnit(str, Enum):
    MBPS = "Mbps"
    GBPS = "Gbps"


class DataUnit(str, Enum):
    GB = "GB"
    TB = "TB"


def _validate_currency(value: str) -> str:
    code = value.upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {value}")
    return code


class PlanPricingInput(BaseModel):
    """Plan prices as supplied by an operator; yearly may be derived."""

    monthly: Decimal = Field(ge=0, description="Monthly price")
    yearly: Decimal | None = Field(None, ge=0, description="Yearly price, derived if omitted")
    setup_fee: Decimal = Field(Decimal("0"), ge=0, description="One-time setup fee")
    currency: str = Field("USD", description="ISO currency code")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class PlanPricing(BaseModel):
    """Plan prices as stored."""

    monthly: Decimal = Field(ge=0)
    yearly: Decimal = Field(ge=0)
    setup_fee: Decimal = Field(Decimal("0"), ge=0)
    currency: str = "USD"

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _validate_currency(v)

    def price_for(self, billing_cycle: BillingCycle) -> Decimal:
        """Price of one period of ``billing_cycle``."""
        if billing_cycle == BillingCycle.YEARLY:
            return self.yearly
        return self.monthly

    @property
    def yearly_savings(self) -> Decimal:
        return self.monthly * 12 - self.yearly


class PlanSpeed(BaseModel):
    download: int = Field(ge=1)
    upload: int = Field(ge=1)
    unit: SpeedUnit = SpeedUnit.MBPS

    @property
    def label(self) -> str:
        return f"{self.download}/{self.upload} {self.unit.value}"


class DataLimit(BaseModel):
    """Monthly data allowance. ``unlimited`` wins over ``amount``."""

    amount: Decimal | None = Field(None, gt=0)
    unit: DataUnit = DataUnit.GB
    unlimited: bool = True

    @model_validator(mode="after")
    def require_amount_when_limited(self) -> "DataLimit":
        if not self.unlimited and self.amount is None:
            raise ValueError("A limited data plan needs an amount")
        return self

    @property
    def limit_in_gb(self) -> Decimal | None:
        if self.unlimited or self.amount is None:
            return None
        if self.unit == DataUnit.TB:
            return self.amount * GB_PER_TB
        return self.amount

    @property
    def label(self) -> str:
        if self.unlimited:
            return "Unlimited"
        return f"{self.amount.normalize():f} {self.unit.value}"


class PlanFeatures(BaseModel):
    speed: PlanSpeed
    data_limit: DataLimit = Field(default_factory=DataLimit)


class Plan(BaseModel):
    """A broadband plan in the catalog."""

    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    name: str
    description: str | None = None
    category: PlanCategory = PlanCategory.RESIDENTIAL
    pricing: PlanPricing
    features: PlanFeatures
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        return self.status == PlanStatus.ACTIVE


class PlanCreateRequest(BaseModel):
    """Request to add a plan to the catalog."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)
    category: PlanCategory = PlanCategory.RESIDENTIAL
    pricing: PlanPricingInput
    features: PlanFeatures
    status: PlanStatus = PlanStatus.ACTIVE


class PlanResponse(Plan):
    """Plan as returned by the API, with display helpers."""

    speed_label: str
    data_limit_label: str
    yearly_savings: Decimal

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            **plan.model_dump(),
            speed_label=plan.features.speed.label,
            data_limit_label=plan.features.data_limit.label,
            yearly_savings=plan.pricing.yearly_savings,
        )
