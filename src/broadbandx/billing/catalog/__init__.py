"""Broadband plan catalog: the read-only plan provider for subscriptions."""

from broadbandx.billing.catalog.models import (
    BillingCycle,
    DataLimit,
    Plan,
    PlanCategory,
    PlanCreateRequest,
    PlanFeatures,
    PlanPricing,
    PlanPricingInput,
    PlanSpeed,
    PlanStatus,
)
from broadbandx.billing.catalog.service import PlanService

__all__ = [
    "BillingCycle",
    "DataLimit",
    "Plan",
    "PlanCategory",
    "PlanCreateRequest",
    "PlanFeatures",
    "PlanPricing",
    "PlanPricingInput",
    "PlanSpeed",
    "PlanStatus",
    "PlanService",
]
