"""Webhook event types exchanged between the data plane and the control plane."""

from __future__ import annotations

from enum import Enum

from sync_core.lifecycle import Transition


class LifecycleEvent(str, Enum):
    CREATED = "tenant.created"
    DISABLED = "tenant.disabled"
    ENABLED = "tenant.enabled"
    DELETED = "tenant.deleted"
    SUBSCRIPTION_CANCELLED = "tenant.subscription.cancelled"
    SUBSCRIPTION_UPDATED = "tenant.subscription.updated"

    @classmethod
    def parse(cls, value: str | None) -> LifecycleEvent | None:
        """Return the matching member, or ``None`` for unknown event types."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def transition(self) -> Transition:
        return _TRANSITIONS[self]


_TRANSITIONS: dict[LifecycleEvent, Transition] = {
    LifecycleEvent.CREATED: Transition.CONFIRM,
    LifecycleEvent.DISABLED: Transition.DISABLE,
    LifecycleEvent.SUBSCRIPTION_CANCELLED: Transition.DISABLE,
    LifecycleEvent.ENABLED: Transition.ENABLE,
    LifecycleEvent.SUBSCRIPTION_UPDATED: Transition.ENABLE,
    LifecycleEvent.DELETED: Transition.DELETE,
}

# Event the data plane emits after applying each transition locally.
EMITTED_EVENT: dict[Transition, LifecycleEvent] = {
    Transition.CONFIRM: LifecycleEvent.CREATED,
    Transition.DISABLE: LifecycleEvent.DISABLED,
    Transition.ENABLE: LifecycleEvent.ENABLED,
    Transition.DELETE: LifecycleEvent.DELETED,
}
