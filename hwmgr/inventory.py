"""Hardware inventory access.

The catalog of hardware profiles and the record of which node belongs to
which pool live together in one versioned ``ConfigRecord``. Writers use
read-modify-write against its resource version and retry on conflict,
so pools progressing concurrently never hand out the same node.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import yaml
from pydantic import ValidationError

from hwmgr.db.models import ConfigRecord
from hwmgr.errors import AlreadyExistsError, ConflictError, NotFoundError, StoreUnavailableError
from hwmgr.logging import get_logger
from hwmgr.schemas.inventory import AllocatedNodes, HwProfileCatalog
from hwmgr.store import ObjectStore, retry_on_conflict

logger = get_logger(__name__)

HWPROFILES_KEY = "hwprofiles"
ALLOCATED_KEY = "allocated"

T = TypeVar("T")


def free_nodes_in_profile(
    catalog: HwProfileCatalog,
    allocated: AllocatedNodes,
    profile_name: str,
) -> list[str]:
    """Nodes declared under ``profile_name`` that no pool has been assigned.

    Order follows the profile's declaration, so the first entry is always
    the lowest-index unused node. An unknown profile has no free nodes.
    """
    profile = catalog.get(profile_name)
    if profile is None:
        return []
    in_use = allocated.in_use()
    return [name for name in profile.nodes if name not in in_use]


@dataclass
class Inventory:
    """A decoded snapshot of the inventory record."""

    record: ConfigRecord
    catalog: HwProfileCatalog
    allocated: AllocatedNodes

    def free_nodes(self, profile_name: str) -> list[str]:
        return free_nodes_in_profile(self.catalog, self.allocated, profile_name)


class AllocationStore:
    """Reads and writes the inventory record."""

    def __init__(
        self,
        objects: ObjectStore,
        record_name: str = "nodelist",
        conflict_retries: int = 5,
    ) -> None:
        self.objects = objects
        self.record_name = record_name
        self.conflict_retries = conflict_retries

    async def load(self, missing_ok: bool = False) -> Inventory | None:
        """Fetch and decode the inventory record.

        With ``missing_ok`` an absent record gives ``None`` instead of an
        error.

        Raises:
            StoreUnavailableError: The record is missing without
                ``missing_ok``, unreachable, or its profile catalog cannot
                be parsed.
        """
        try:
            record = await self.objects.get(ConfigRecord, self.record_name)
        except NotFoundError as e:
            if missing_ok:
                return None
            raise StoreUnavailableError(
                f"unable to get inventory record {self.record_name}: {e}"
            ) from e

        try:
            catalog = HwProfileCatalog.from_yaml(record.data.get(HWPROFILES_KEY))
        except (yaml.YAMLError, ValidationError) as e:
            raise StoreUnavailableError(f"unable to parse hwprofiles from inventory: {e}") from e

        try:
            allocated = AllocatedNodes.from_yaml(record.data.get(ALLOCATED_KEY))
        except (yaml.YAMLError, ValidationError):
            # The allocated section may not be present yet
            logger.info("allocated_section_unreadable", record=self.record_name)
            allocated = AllocatedNodes()

        return Inventory(record=record, catalog=catalog, allocated=allocated)

    async def mutate(self, change: Callable[[Inventory], T]) -> T:
        """Apply ``change`` to a fresh inventory and persist the result.

        ``change`` edits ``inventory.allocated`` in place and may be called
        more than once: on a conflicting write the inventory is reloaded
        and ``change`` re-run. Nothing is written when the allocated
        section comes out unchanged.
        """

        async def _attempt() -> T:
            inventory = await self.load()
            before = inventory.allocated.to_yaml()
            result = change(inventory)
            after = inventory.allocated.to_yaml()
            if after != before:
                record = inventory.record
                record.data = {**record.data, ALLOCATED_KEY: after}
                await self.objects.update(record)
            return result

        return await retry_on_conflict(_attempt, self.conflict_retries, self.record_name)

    async def replace_catalog(self, catalog: HwProfileCatalog) -> ConfigRecord:
        """Write the hardware profile catalog, creating the record if needed."""

        async def _attempt() -> ConfigRecord:
            try:
                record = await self.objects.get(ConfigRecord, self.record_name)
            except NotFoundError:
                record = ConfigRecord(
                    name=self.record_name,
                    namespace=self.objects.namespace,
                    data={HWPROFILES_KEY: catalog.to_yaml()},
                )
                try:
                    return await self.objects.create(record)
                except AlreadyExistsError as e:
                    raise ConflictError(str(e)) from e
            record.data = {**record.data, HWPROFILES_KEY: catalog.to_yaml()}
            return await self.objects.update(record)

        record = await retry_on_conflict(_attempt, self.conflict_retries, self.record_name)
        logger.info(
            "hwprofiles_replaced",
            record=self.record_name,
            profiles=[p.name for p in catalog.profiles],
        )
        return record
