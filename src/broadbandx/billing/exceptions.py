"""
Billing system exceptions.

Custom exceptions for subscription and plan operations with clear error messages.
Each carries a status code, context and a recovery hint so the HTTP layer can
render it without further interpretation.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class SubscriptionConflictError(SubscriptionError):
    """The request collides with existing subscription state."""

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        user_id: str | None = None,
        plan_id: str | None = None,
    ) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if user_id:
            context["user_id"] = user_id
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Upgrade or downgrade the existing subscription instead",
        )
        self.error_code = "SUBSCRIPTION_CONFLICT"
        self.status_code = 409


class InvalidTransitionError(SubscriptionError):
    """Invalid subscription state transition or plan-change direction."""

    def __init__(
        self,
        message: str,
        current_state: str,
        requested_state: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            context={
                "current_state": current_state,
                "requested_state": requested_state,
                **(context or {}),
            },
            recovery_hint=(
                f"Cannot transition from {current_state} to {requested_state}. "
                "Check subscription status and target plan first."
            ),
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"


class SubscriptionAccessDeniedError(SubscriptionError):
    """Actor is neither the owner of the subscription nor an admin."""

    def __init__(
        self, message: str, subscription_id: str | None = None, user_id: str | None = None
    ) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if user_id:
            context["user_id"] = user_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Only the subscription owner or an administrator may do this",
        )
        self.error_code = "SUBSCRIPTION_ACCESS_DENIED"
        self.status_code = 403


class ConcurrentModificationError(SubscriptionError):
    """Another request changed the subscription between read and write."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        super().__init__(
            message,
            context={"subscription_id": subscription_id} if subscription_id else None,
            recovery_hint="Reload the subscription and retry the request",
        )
        self.error_code = "CONCURRENT_MODIFICATION"
        self.status_code = 409


class PlanNotFoundError(SubscriptionError):
    """Plan not found, or not available for new business."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class PricingError(BillingError):
    """Pricing-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PRICING_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class CurrencyMismatchError(PricingError):
    """A plan change would move the subscription to another currency."""

    def __init__(self, message: str, current_currency: str, target_currency: str) -> None:
        super().__init__(
            message,
            context={"current_currency": current_currency, "target_currency": target_currency},
            recovery_hint="Choose a plan priced in the subscription's currency",
        )
        self.error_code = "CURRENCY_MISMATCH"
