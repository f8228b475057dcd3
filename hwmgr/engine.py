"""Allocation engine.

Matches free hardware to node pool requests, one node per call. Each
step commits the allocation record before the Node resource is created,
so an interrupted step leaves at worst a recorded node with no Node,
which ``repair`` re-creates on the next pass.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from hwmgr.db.models import StoredObject
from hwmgr.errors import InsufficientCapacityError
from hwmgr.inventory import AllocationStore, Inventory
from hwmgr.logging import get_logger
from hwmgr.metrics import record_allocation, record_release, set_free_nodes
from hwmgr.provisioner import NodeProvisioner
from hwmgr.schemas.inventory import AllocatedNodes
from hwmgr.schemas.nodepool import NodeGroup

logger = get_logger(__name__)


@dataclass
class Assignment:
    """One node handed to one group."""

    group: NodeGroup
    node_name: str
    more_needed: bool


def _has_shortfall(allocated: AllocatedNodes, pool_id: str, groups: Sequence[NodeGroup]) -> bool:
    return any(g.size > len(allocated.assigned(pool_id, g.name)) for g in groups)


class AllocationEngine:
    """Assigns, tracks and releases nodes for node pools."""

    def __init__(self, store: AllocationStore, provisioner: NodeProvisioner) -> None:
        self.store = store
        self.provisioner = provisioner

    async def validate_request(self, pool_id: str, groups: Sequence[NodeGroup]) -> None:
        """Reject a request no single group of which could be satisfied now.

        Each group is checked against the profile's current free nodes on
        its own; nodes other groups of the same request would take are not
        subtracted.

        Raises:
            InsufficientCapacityError: A group asks for more than is free.
            StoreUnavailableError: The inventory could not be read.
        """
        inventory = await self.store.load()
        for group in groups:
            free = inventory.free_nodes(group.hw_profile)
            set_free_nodes(group.hw_profile, len(free))
            if group.size > len(free):
                logger.warning(
                    "nodepool_request_too_large",
                    pool_id=pool_id,
                    nodegroup=group.name,
                    hw_profile=group.hw_profile,
                    size=group.size,
                    free=len(free),
                )
                raise InsufficientCapacityError(group.hw_profile, group.size, len(free))

    async def ensure_capacity(
        self,
        pool_id: str,
        groups: Sequence[NodeGroup],
        owner: StoredObject | None = None,
    ) -> bool:
        """Allocate at most one node to the first group that is short.

        Returns:
            True while any group still needs nodes after this step.

        Raises:
            InsufficientCapacityError: The first short group can no longer
                be filled from its profile.
            StoreUnavailableError: The record could not be read or written.
            ResourceConflictError: The Node for the picked name exists.
        """

        def _pick(inventory: Inventory) -> Assignment | None:
            for group in groups:
                remaining = group.size - len(inventory.allocated.assigned(pool_id, group.name))
                if remaining <= 0:
                    continue

                free = inventory.free_nodes(group.hw_profile)
                if len(free) < remaining:
                    raise InsufficientCapacityError(group.hw_profile, remaining, len(free))

                node_name = free[0]
                cloud = inventory.allocated.ensure(pool_id)
                cloud.nodegroups.setdefault(group.name, []).append(node_name)
                set_free_nodes(group.hw_profile, len(free) - 1)
                return Assignment(
                    group=group,
                    node_name=node_name,
                    more_needed=_has_shortfall(inventory.allocated, pool_id, groups),
                )
            return None

        try:
            assignment = await self.store.mutate(_pick)
        except InsufficientCapacityError as e:
            record_allocation(e.profile, "insufficient")
            raise

        if assignment is None:
            logger.info("nodepool_fully_allocated", pool_id=pool_id)
            return False

        group = assignment.group
        logger.info(
            "node_allocated",
            pool_id=pool_id,
            nodegroup=group.name,
            node_name=assignment.node_name,
        )
        record_allocation(group.hw_profile, "allocated")
        await self.provisioner.create(
            pool_id, assignment.node_name, group.name, group.hw_profile, owner=owner
        )
        return assignment.more_needed

    async def is_fully_satisfied(self, pool_id: str, groups: Sequence[NodeGroup]) -> bool:
        """True when every group holds exactly the nodes it asked for.

        Groups dropped from the request must hold no nodes either. Every
        short group is checked, not only the first one.

        Raises:
            InsufficientCapacityError: A short group can no longer be
                filled, e.g. because the profile shrank.
        """
        inventory = await self.store.load()
        cloud = inventory.allocated.find(pool_id)
        requested = {g.name for g in groups}
        satisfied = cloud is None or not any(
            names for name, names in cloud.nodegroups.items() if name not in requested
        )

        for group in groups:
            remaining = group.size - len(inventory.allocated.assigned(pool_id, group.name))
            if remaining == 0:
                continue
            satisfied = False
            if remaining < 0:
                continue

            free = inventory.free_nodes(group.hw_profile)
            if remaining > len(free):
                raise InsufficientCapacityError(group.hw_profile, remaining, len(free))

        return satisfied

    async def release(self, pool_id: str) -> list[str]:
        """Delete every Node of a pool and drop its allocation entry.

        Returns:
            The released node names; empty when nothing was allocated.
        """
        logger.info("nodepool_releasing", pool_id=pool_id)
        # No inventory record means no pool has an allocation entry
        inventory = await self.store.load(missing_ok=True)
        cloud = inventory.allocated.find(pool_id) if inventory is not None else None
        recorded = cloud.nodes() if cloud is not None else []

        # Nodes left behind by an interrupted trim are not in the record
        strays = [n.name for n in await self.provisioner.list(pool_id) if n.name not in recorded]
        for node_name in recorded + strays:
            await self.provisioner.delete(node_name)

        if cloud is None:
            logger.info("nodepool_no_allocated_nodes", pool_id=pool_id)
            return strays

        await self.store.mutate(lambda inv: inv.allocated.remove(pool_id))
        record_release(len(recorded))
        logger.info("nodepool_released", pool_id=pool_id, nodes=recorded)
        return recorded + strays

    async def repair(
        self,
        pool_id: str,
        groups: Sequence[NodeGroup],
        owner: StoredObject | None = None,
    ) -> list[str]:
        """Re-create Nodes the record lists for the pool but that are missing.

        The allocation record is authoritative.
        """
        inventory = await self.store.load()
        cloud = inventory.allocated.find(pool_id)
        if cloud is None:
            return []

        existing = {n.name for n in await self.provisioner.list(pool_id)}
        profiles = {g.name: g.hw_profile for g in groups}
        recreated = []
        for group_name, names in cloud.nodegroups.items():
            for node_name in names:
                if node_name in existing:
                    continue
                profile = profiles.get(group_name) or inventory.catalog.profile_of(node_name) or ""
                logger.warning(
                    "node_missing_recreating",
                    pool_id=pool_id,
                    nodegroup=group_name,
                    node_name=node_name,
                )
                await self.provisioner.create(pool_id, node_name, group_name, profile, owner=owner)
                recreated.append(node_name)
        return recreated

    async def trim_surplus(self, pool_id: str, groups: Sequence[NodeGroup]) -> str | None:
        """Release one node from a group holding more than it asks for.

        Groups no longer in the request count as size zero. The Node is
        deleted before the record entry, so an interrupted trim is
        finished by the next one.

        Returns:
            The released node name, or None when nothing is surplus.
        """
        inventory = await self.store.load()
        cloud = inventory.allocated.find(pool_id)
        if cloud is None:
            return None

        sizes = {g.name: g.size for g in groups}
        for group_name, names in cloud.nodegroups.items():
            if len(names) > sizes.get(group_name, 0):
                node_name = names[-1]
                break
        else:
            return None

        await self.provisioner.delete(node_name)

        def _drop(inv: Inventory) -> None:
            current = inv.allocated.find(pool_id)
            if current is None or node_name not in current.nodegroups.get(group_name, []):
                return
            current.nodegroups[group_name].remove(node_name)
            if not current.nodegroups[group_name]:
                del current.nodegroups[group_name]

        await self.store.mutate(_drop)
        record_release(1)
        logger.info("node_trimmed", pool_id=pool_id, nodegroup=group_name, node_name=node_name)
        return node_name

    async def allocated_nodes(self, pool_id: str) -> list[str]:
        """Sorted names of every node assigned to the pool."""
        inventory = await self.store.load()
        cloud = inventory.allocated.find(pool_id)
        return sorted(cloud.nodes()) if cloud is not None else []

    async def free_nodes(self, profile_name: str) -> list[str]:
        inventory = await self.store.load()
        return inventory.free_nodes(profile_name)
