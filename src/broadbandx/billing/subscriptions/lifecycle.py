"""
Subscription state machine.

One table lists, per lifecycle event, the statuses it may start from and the
status it leads to. Services ask ``next_status`` before mutating anything.
"""

from enum import Enum

from broadbandx.billing.exceptions import InvalidTransitionError, SubscriptionConflictError
from broadbandx.billing.subscriptions.models import SubscriptionStatus


class LifecycleEvent(str, Enum):
    ACTIVATE = "activate"
    PAUSE = "pause"
    RESUME = "resume"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEW = "renew"
    CANCEL = "cancel"
    EXPIRE = "expire"
    SCHEDULE_INSTALLATION = "schedule_installation"


_S = SubscriptionStatus

Transition = tuple[frozenset[SubscriptionStatus], SubscriptionStatus | None]

# event -> (allowed starting statuses, resulting status; None keeps the current one)
TRANSITIONS: dict[LifecycleEvent, Transition] = {
    LifecycleEvent.ACTIVATE: (frozenset({_S.PENDING, _S.ACTIVE}), _S.ACTIVE),
    LifecycleEvent.PAUSE: (frozenset({_S.ACTIVE}), _S.SUSPENDED),
    LifecycleEvent.RESUME: (frozenset({_S.SUSPENDED}), _S.ACTIVE),
    LifecycleEvent.UPGRADE: (frozenset({_S.ACTIVE}), _S.ACTIVE),
    LifecycleEvent.DOWNGRADE: (frozenset({_S.ACTIVE}), _S.ACTIVE),
    LifecycleEvent.RENEW: (frozenset({_S.ACTIVE, _S.EXPIRED}), _S.ACTIVE),
    LifecycleEvent.CANCEL: (
        frozenset({_S.PENDING, _S.ACTIVE, _S.SUSPENDED, _S.EXPIRED}),
        _S.CANCELLED,
    ),
    LifecycleEvent.EXPIRE: (frozenset({_S.ACTIVE}), _S.EXPIRED),
    LifecycleEvent.SCHEDULE_INSTALLATION: (
        frozenset({_S.PENDING, _S.ACTIVE, _S.SUSPENDED, _S.EXPIRED}),
        None,
    ),
}

_REJECTION_MESSAGES = {
    LifecycleEvent.ACTIVATE: "Can only activate pending subscriptions",
    LifecycleEvent.PAUSE: "Can only pause active subscriptions",
    LifecycleEvent.RESUME: "Can only resume suspended subscriptions",
    LifecycleEvent.UPGRADE: "Can only upgrade active subscriptions",
    LifecycleEvent.DOWNGRADE: "Can only downgrade active subscriptions",
    LifecycleEvent.RENEW: "Can only renew active or expired subscriptions",
    LifecycleEvent.CANCEL: "Subscription cannot be cancelled",
    LifecycleEvent.EXPIRE: "Can only expire active subscriptions",
    LifecycleEvent.SCHEDULE_INSTALLATION: (
        "Cannot schedule installation for a cancelled subscription"
    ),
}


def can_transition(current: SubscriptionStatus, event: LifecycleEvent) -> bool:
    allowed, _ = TRANSITIONS[event]
    return current in allowed


def next_status(
    current: SubscriptionStatus, event: LifecycleEvent, subscription_id: str | None = None
) -> SubscriptionStatus:
    """Status after ``event``, or raise if ``event`` is not allowed from ``current``.

    Raises:
        SubscriptionConflictError: Cancelling an already cancelled subscription
        InvalidTransitionError: Any other disallowed transition
    """
    allowed, target = TRANSITIONS[event]
    if current in allowed:
        return target or current

    if event == LifecycleEvent.CANCEL and current == SubscriptionStatus.CANCELLED:
        raise SubscriptionConflictError(
            "Subscription is already cancelled", subscription_id=subscription_id
        )
    raise InvalidTransitionError(
        _REJECTION_MESSAGES[event],
        current_state=current.value,
        requested_state=(target or current).value,
        context={"event": event.value, "subscription_id": subscription_id},
    )
