"""Node pool status conditions.

Conditions are stored as plain dicts on the pool record so the status
stays a JSON list. At most one entry exists per condition type.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ConditionType(str, Enum):
    """Facets of a node pool's lifecycle."""

    FAILED = "Failed"
    UNPROVISIONED = "Unprovisioned"
    PROVISIONED = "Provisioned"
    UPDATING = "Updating"


class ConditionReason(str, Enum):
    """Why a condition holds its current value."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    UPDATING = "Updating"
    SPEC_CHANGED = "SpecChanged"


def find_condition(
    conditions: list[dict[str, Any]],
    condition_type: ConditionType,
) -> dict[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == condition_type.value:
            return condition
    return None


def is_condition_true(
    conditions: list[dict[str, Any]],
    condition_type: ConditionType,
) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.get("status") is True


def set_condition(
    conditions: list[dict[str, Any]],
    condition_type: ConditionType,
    reason: ConditionReason,
    status: bool,
    message: str,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Return a copy of ``conditions`` with one condition set.

    An existing entry of the same type is replaced in place. Its
    ``lastTransitionTime`` only moves when ``status`` actually flips.
    """
    now = now or datetime.now(timezone.utc)
    updated = [dict(c) for c in conditions]
    existing = find_condition(updated, condition_type)

    if existing is None:
        updated.append(
            {
                "type": condition_type.value,
                "status": status,
                "reason": reason.value,
                "message": message,
                "lastTransitionTime": now.isoformat(),
            }
        )
        return updated

    if existing.get("status") != status:
        existing["lastTransitionTime"] = now.isoformat()
    existing["status"] = status
    existing["reason"] = reason.value
    existing["message"] = message
    return updated
