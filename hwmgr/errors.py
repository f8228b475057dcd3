"""Error taxonomy for the hardware manager.

Transient errors carry a ``retry_after`` hint (seconds) that the dispatcher
uses to requeue the pool. Terminal errors have no hint.
"""

from __future__ import annotations

from typing import Any


class HwMgrError(Exception):
    """Base exception for hardware manager errors."""

    code = "hwmgr_error"
    http_status = 500
    retry_after: float | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict[str, Any]:
        """Build the JSON error envelope returned by the API."""
        return {"error": {"code": self.code, "message": self.message}}


class NotFoundError(HwMgrError):
    """Raised when an expected resource does not exist."""

    code = "not_found"
    http_status = 404


class AlreadyExistsError(HwMgrError):
    """Raised when creating a resource whose name is already taken."""

    code = "already_exists"
    http_status = 409


class ConflictError(HwMgrError):
    """Raised when an update carries a stale resource version."""

    code = "conflict"
    http_status = 409


class StoreUnavailableError(HwMgrError):
    """Transient failure reading or writing the backing store."""

    code = "store_unavailable"
    http_status = 503

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InsufficientCapacityError(HwMgrError):
    """The hardware inventory cannot satisfy a node group."""

    code = "insufficient_capacity"
    http_status = 409

    def __init__(self, profile: str, needed: int, available: int) -> None:
        super().__init__(
            f"not enough free resources in hardware profile {profile}: "
            f"needed={needed}, available={available}"
        )
        self.profile = profile
        self.needed = needed
        self.available = available

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["error"].update(
            profile=self.profile, needed=self.needed, available=self.available
        )
        return response


class ResourceConflictError(HwMgrError):
    """A Node resource exists where the allocation record says none should."""

    code = "resource_conflict"
    http_status = 409


class InvalidTransitionError(HwMgrError):
    """A node pool state machine event is not valid for the current state."""

    code = "invalid_transition"
    http_status = 500
