"""Node pool reconciliation.

A pool's state is never stored on its own: it is derived from the status
conditions each time the pool is reconciled. Every pass performs at most
one unit of work and tells the caller when to come back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from hwmgr.conditions import ConditionReason, ConditionType, is_condition_true, set_condition
from hwmgr.config import Settings
from hwmgr.db.models import NodePoolRecord
from hwmgr.engine import AllocationEngine
from hwmgr.errors import (
    HwMgrError,
    InsufficientCapacityError,
    InvalidTransitionError,
    NotFoundError,
    ResourceConflictError,
    StoreUnavailableError,
)
from hwmgr.logging import get_logger, pool_context
from hwmgr.metrics import record_reconcile
from hwmgr.schemas.nodepool import NodeGroup
from hwmgr.store import ObjectStore

logger = get_logger(__name__)


class PoolState(str, Enum):
    """Lifecycle state derived from a pool's conditions."""

    NO_CONDITIONS = "NoConditions"
    FAILED = "Failed"
    PROVISIONED = "Provisioned"
    UNPROVISIONED = "Unprovisioned"
    UPDATING = "Updating"
    IDLE = "Idle"


class PoolEvent(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    PROGRESSED = "progressed"
    SATISFIED = "satisfied"
    SPEC_CHANGED = "spec_changed"


class Action(str, Enum):
    ADMIT = "admit"
    PROGRESS = "progress"
    RESET = "reset"
    NOOP = "noop"


TRANSITIONS: dict[tuple[PoolState, PoolEvent], PoolState] = {
    (PoolState.NO_CONDITIONS, PoolEvent.ADMITTED): PoolState.UNPROVISIONED,
    (PoolState.NO_CONDITIONS, PoolEvent.REJECTED): PoolState.FAILED,
    (PoolState.UNPROVISIONED, PoolEvent.PROGRESSED): PoolState.UNPROVISIONED,
    (PoolState.UNPROVISIONED, PoolEvent.SATISFIED): PoolState.PROVISIONED,
    (PoolState.UPDATING, PoolEvent.PROGRESSED): PoolState.UPDATING,
    (PoolState.UPDATING, PoolEvent.SATISFIED): PoolState.PROVISIONED,
    (PoolState.PROVISIONED, PoolEvent.SPEC_CHANGED): PoolState.UPDATING,
}


def derive_state(conditions: list[dict[str, Any]]) -> PoolState:
    """Map a condition list to the pool's state.

    Checked in priority order: Failed, Provisioned, Unprovisioned, Updating.
    """
    if not conditions:
        return PoolState.NO_CONDITIONS
    for condition_type, state in (
        (ConditionType.FAILED, PoolState.FAILED),
        (ConditionType.PROVISIONED, PoolState.PROVISIONED),
        (ConditionType.UNPROVISIONED, PoolState.UNPROVISIONED),
        (ConditionType.UPDATING, PoolState.UPDATING),
    ):
        if is_condition_true(conditions, condition_type):
            return state
    return PoolState.IDLE


def next_state(state: PoolState, event: PoolEvent) -> PoolState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"event {event.value} is not valid in state {state.value}"
        ) from None


def action_for(state: PoolState, spec_changed: bool = False) -> Action:
    """Decide what a reconcile pass does in ``state``.

    Failed is terminal. Provisioned is terminal until the request is
    edited, which starts an update.
    """
    if state is PoolState.NO_CONDITIONS:
        return Action.ADMIT
    if state in (PoolState.UNPROVISIONED, PoolState.UPDATING):
        return Action.PROGRESS
    if state is PoolState.PROVISIONED and spec_changed:
        return Action.RESET
    return Action.NOOP


def apply_state(
    conditions: list[dict[str, Any]],
    state: PoolState,
    reason: ConditionReason,
    message: str,
) -> list[dict[str, Any]]:
    """Return ``conditions`` rewritten so that they derive to ``state``."""

    def _clear(current: list[dict[str, Any]], *types: ConditionType) -> list[dict[str, Any]]:
        for condition_type in types:
            if is_condition_true(current, condition_type):
                current = set_condition(current, condition_type, reason, False, message)
        return current

    if state is PoolState.FAILED:
        return set_condition(conditions, ConditionType.FAILED, reason, True, message)
    if state is PoolState.UNPROVISIONED:
        return set_condition(conditions, ConditionType.UNPROVISIONED, reason, True, message)
    if state is PoolState.UPDATING:
        updated = _clear(conditions, ConditionType.PROVISIONED)
        return set_condition(updated, ConditionType.UPDATING, reason, True, message)
    if state is PoolState.PROVISIONED:
        updated = _clear(conditions, ConditionType.UNPROVISIONED, ConditionType.UPDATING)
        return set_condition(updated, ConditionType.PROVISIONED, reason, True, message)
    raise InvalidTransitionError(f"state {state.value} has no condition representation")


def pool_groups(pool: NodePoolRecord) -> list[NodeGroup]:
    return [NodeGroup.model_validate(group) for group in pool.node_groups]


@dataclass
class ReconcileResult:
    """What the dispatcher should do after a reconcile pass."""

    state: PoolState | None = None
    requeue_after: float | None = None


class NodePoolReconciler:
    """Drives node pools from request to provisioned."""

    def __init__(self, objects: ObjectStore, engine: AllocationEngine, settings: Settings) -> None:
        self.objects = objects
        self.engine = engine
        self.settings = settings

    async def reconcile(self, pool_id: str) -> ReconcileResult:
        """Run one reconcile pass for a pool.

        Returns a result with ``requeue_after`` set while provisioning is
        incomplete and unset once the pool is terminal.

        Raises:
            HwMgrError: Conditions the pass could not correct on its own.
                Transient ones carry a ``retry_after`` hint.
        """
        with pool_context(pool_id):
            try:
                pool = await self.objects.get(NodePoolRecord, pool_id)
            except NotFoundError:
                # The pool could have been deleted
                logger.info("nodepool_not_found")
                return ReconcileResult()

            state = derive_state(pool.conditions)
            action = action_for(state, spec_changed=pool.generation > pool.observed_generation)
            logger.info("nodepool_reconcile", state=state.value, action=action.value)

            handlers = {
                Action.ADMIT: self._admit,
                Action.PROGRESS: self._progress,
                Action.RESET: self._reset,
                Action.NOOP: self._noop,
            }
            start_time = time.perf_counter()
            try:
                result = await handlers[action](pool, state)
            except HwMgrError as e:
                record_reconcile(action.value, e.code, time.perf_counter() - start_time)
                raise
            record_reconcile(action.value, "ok", time.perf_counter() - start_time)
            return result

    async def _noop(self, pool: NodePoolRecord, state: PoolState) -> ReconcileResult:
        return ReconcileResult(state=state)

    async def _admit(self, pool: NodePoolRecord, state: PoolState) -> ReconcileResult:
        try:
            await self.engine.validate_request(pool.name, pool_groups(pool))
        except InsufficientCapacityError as e:
            logger.error("nodepool_create_failed", error=str(e))
            new_state = next_state(state, PoolEvent.REJECTED)
            pool.conditions = apply_state(
                pool.conditions,
                new_state,
                ConditionReason.FAILED,
                f"Creation request failed: {e}",
            )
            await self._persist_status(pool)
            return ReconcileResult(state=new_state)

        new_state = next_state(state, PoolEvent.ADMITTED)
        pool.conditions = apply_state(
            pool.conditions, new_state, ConditionReason.IN_PROGRESS, "Handling creation"
        )
        pool.observed_generation = pool.generation
        await self._persist_status(pool)
        logger.info("nodepool_admitted")
        return ReconcileResult(state=new_state, requeue_after=self.settings.requeue_short_seconds)

    async def _reset(self, pool: NodePoolRecord, state: PoolState) -> ReconcileResult:
        new_state = next_state(state, PoolEvent.SPEC_CHANGED)
        pool.conditions = apply_state(
            pool.conditions,
            new_state,
            ConditionReason.SPEC_CHANGED,
            f"Node groups changed at generation {pool.generation}",
        )
        await self._persist_status(pool)
        logger.info("nodepool_update_started", generation=pool.generation)
        return ReconcileResult(state=new_state, requeue_after=self.settings.requeue_short_seconds)

    async def _progress(self, pool: NodePoolRecord, state: PoolState) -> ReconcileResult:
        groups = pool_groups(pool)
        try:
            if await self.engine.trim_surplus(pool.name, groups) is None:
                await self.engine.repair(pool.name, groups, owner=pool)
                await self.engine.ensure_capacity(pool.name, groups, owner=pool)
            satisfied = await self.engine.is_fully_satisfied(pool.name, groups)
        except ResourceConflictError as e:
            logger.error("nodepool_allocation_inconsistent", error=str(e))
            raise

        if not satisfied:
            logger.info("nodepool_in_progress")
            return ReconcileResult(
                state=next_state(state, PoolEvent.PROGRESSED),
                requeue_after=self.settings.requeue_short_seconds,
            )

        new_state = next_state(state, PoolEvent.SATISFIED)
        pool.conditions = apply_state(
            pool.conditions, new_state, ConditionReason.COMPLETED, "Provisioned"
        )
        pool.observed_generation = pool.generation
        await self._persist_status(pool)
        logger.info("nodepool_provisioned")
        return ReconcileResult(state=new_state)

    async def _persist_status(self, pool: NodePoolRecord) -> None:
        try:
            await self.objects.update_status(pool)
        except StoreUnavailableError as e:
            raise StoreUnavailableError(
                f"failed to update status for NodePool {pool.name}: {e}",
                retry_after=self.settings.requeue_medium_seconds,
            ) from e

    async def delete_pool(self, pool_id: str) -> list[str]:
        """Release a pool's nodes, then delete the pool itself."""
        with pool_context(pool_id):
            released = await self.engine.release(pool_id)
            await self.objects.delete(NodePoolRecord, pool_id)
            logger.info("nodepool_deleted", released=released)
            return released
