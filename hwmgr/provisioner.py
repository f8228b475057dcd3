"""Node resource lifecycle."""

from __future__ import annotations

from hwmgr.db.models import NodeRecord, StoredObject
from hwmgr.errors import AlreadyExistsError, NotFoundError, ResourceConflictError
from hwmgr.logging import get_logger
from hwmgr.store import ObjectStore, WriteMode

logger = get_logger(__name__)


class NodeProvisioner:
    """Creates and deletes Node resources in the manager's namespace."""

    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects

    @property
    def namespace(self) -> str:
        return self.objects.namespace

    async def create(
        self,
        pool_id: str,
        node_name: str,
        group_name: str,
        profile_name: str,
        owner: StoredObject | None = None,
    ) -> NodeRecord:
        """Create the Node for a freshly assigned node name.

        Raises:
            ResourceConflictError: A Node with that name already exists.
                The allocation record should make this impossible, so it
                is reported rather than ignored.
        """
        logger.info(
            "node_creating",
            pool_id=pool_id,
            nodegroup=group_name,
            node_name=node_name,
            hw_profile=profile_name,
        )
        node = NodeRecord(
            name=node_name,
            namespace=self.namespace,
            node_pool=pool_id,
            group_name=group_name,
            hw_profile=profile_name,
        )
        try:
            return await self.objects.create_or_update(node, owner=owner, mode=WriteMode.CREATE)
        except AlreadyExistsError as e:
            logger.error("node_already_exists", pool_id=pool_id, node_name=node_name)
            raise ResourceConflictError(
                f"failed to create Node {node_name} for pool {pool_id}: {e}"
            ) from e

    async def delete(self, node_name: str) -> None:
        """Delete a Node. A missing Node counts as deleted."""
        logger.info("node_deleting", node_name=node_name)
        if not await self.objects.delete(NodeRecord, node_name):
            logger.info("node_already_absent", node_name=node_name)

    async def exists(self, node_name: str) -> bool:
        try:
            await self.objects.get(NodeRecord, node_name)
        except NotFoundError:
            return False
        return True

    async def list(self, pool_id: str | None = None) -> list[NodeRecord]:
        if pool_id is None:
            return await self.objects.list(NodeRecord)
        return await self.objects.list(NodeRecord, node_pool=pool_id)
