"""Tenant lifecycle state machine.

::

    (create) --> pending --confirm--> active --disable--> disabled
                    |                   ^  <---enable---     |
                    |                   |                     |
                    +-------delete------+------delete---------+--> deleted

``deleted`` is terminal.  Application is idempotent: a transition whose
target equals the current status succeeds without change, which absorbs
duplicate webhook deliveries and commands that raced to the same result.
Every other mismatch raises :class:`IllegalTransitionError` because it
points at a sequencing problem that must be surfaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sync_core.errors import IllegalTransitionError


class TenantStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISABLED = "disabled"
    DELETED = "deleted"


class Transition(str, Enum):
    CONFIRM = "confirm"
    DISABLE = "disable"
    ENABLE = "enable"
    DELETE = "delete"


# transition -> (allowed source states, target state)
_RULES: dict[Transition, tuple[frozenset[TenantStatus], TenantStatus]] = {
    Transition.CONFIRM: (frozenset({TenantStatus.PENDING}), TenantStatus.ACTIVE),
    Transition.DISABLE: (frozenset({TenantStatus.ACTIVE}), TenantStatus.DISABLED),
    Transition.ENABLE: (frozenset({TenantStatus.DISABLED}), TenantStatus.ACTIVE),
    Transition.DELETE: (
        frozenset({TenantStatus.PENDING, TenantStatus.ACTIVE, TenantStatus.DISABLED}),
        TenantStatus.DELETED,
    ),
}

INITIAL_STATUS = TenantStatus.PENDING


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of :func:`apply_transition`.

    ``applied`` is ``False`` when the tenant was already in the target
    state and nothing needs to be written.
    """

    previous: TenantStatus
    current: TenantStatus
    applied: bool


def target_of(transition: Transition | str) -> TenantStatus:
    """Return the status a transition leads to."""
    return _RULES[Transition(transition)][1]


def can_transition(current: TenantStatus | str, transition: Transition | str) -> bool:
    """Return ``True`` if *transition* would succeed (applied or no-op)."""
    sources, target = _RULES[Transition(transition)]
    status = TenantStatus(current)
    return status == target or status in sources


def apply_transition(current: TenantStatus | str, transition: Transition | str) -> TransitionResult:
    """Compute the result of applying *transition* to a tenant in *current*.

    Raises
    ------
    IllegalTransitionError
        If *current* is neither a permitted source nor already the target.
    """
    status = TenantStatus(current)
    step = Transition(transition)
    sources, target = _RULES[step]

    if status == target:
        return TransitionResult(previous=status, current=status, applied=False)
    if status in sources:
        return TransitionResult(previous=status, current=target, applied=True)
    raise IllegalTransitionError(status.value, step.value)
