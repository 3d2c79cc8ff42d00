"""Subscription lifecycle and pricing engine."""

from broadbandx.billing.subscriptions.lifecycle import LifecycleEvent, can_transition, next_status
from broadbandx.billing.subscriptions.models import (
    CancellationRequest,
    CancellationResult,
    PlanChangeResult,
    PlanDowngradeRequest,
    PlanUpgradeRequest,
    ServiceEventType,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionStatus,
)
from broadbandx.billing.subscriptions.service import SubscriptionService

__all__ = [
    "CancellationRequest",
    "CancellationResult",
    "LifecycleEvent",
    "PlanChangeResult",
    "PlanDowngradeRequest",
    "PlanUpgradeRequest",
    "ServiceEventType",
    "Subscription",
    "SubscriptionCreateRequest",
    "SubscriptionService",
    "SubscriptionStatus",
    "can_transition",
    "next_status",
]
