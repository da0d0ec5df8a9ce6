"""Apply lifecycle transitions to stored records with compare-and-set writes."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sync_core.errors import ConcurrentModificationError, TenantNotFoundError
from sync_core.lifecycle import Transition, TransitionResult, apply_transition

logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 3


class LifecycleRecordRepository(Protocol):
    async def get(self, record_id: str) -> Any: ...

    async def update_status(self, record_id: str, expected_status: str, values: dict[str, Any]) -> bool: ...


async def transition_record(
    repo: LifecycleRecordRepository,
    record_id: str,
    transition: Transition,
    values: dict[str, Any] | None = None,
) -> tuple[Any, TransitionResult]:
    """Apply *transition* to the record and return ``(record, result)``.

    *values* are extra columns written together with the new status.  When
    the record is already in the target state nothing is written and
    ``result.applied`` is ``False``.  A guarded update that loses a race is
    retried against the fresh status.

    Raises
    ------
    TenantNotFoundError
        If the record does not exist.
    IllegalTransitionError
        If the current status does not allow the transition.
    ConcurrentModificationError
        If the record changed on every attempt.
    """
    for _ in range(_MAX_CAS_ATTEMPTS):
        record = await repo.get(record_id)
        if record is None:
            raise TenantNotFoundError(record_id)

        result = apply_transition(record.status, transition)
        if not result.applied:
            return record, result

        update_values = dict(values or {})
        update_values["status"] = result.current.value
        if await repo.update_status(record_id, result.previous.value, update_values):
            return await repo.get(record_id), result

        logger.info("Status of %s changed during %s; retrying", record_id, transition.value)

    raise ConcurrentModificationError(f"Record '{record_id}' changed concurrently during '{transition.value}'")
