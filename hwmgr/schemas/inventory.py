"""Hardware inventory documents.

The inventory record stores two YAML sections. ``hwprofiles`` is the
catalog of hardware profiles and ``allocated`` maps each pool (written
as ``cloudID`` for compatibility with existing records) to the node
names assigned to each of its groups.
"""

from __future__ import annotations

import yaml
from pydantic import BaseModel, ConfigDict, Field


class HwProfile(BaseModel):
    """A named set of interchangeable nodes."""

    name: str = Field(..., description="Hardware profile name")
    nodes: list[str] = Field(default_factory=list, description="Node names, in allocation order")


class HwProfileCatalog(BaseModel):
    """The ``hwprofiles`` section of the inventory record."""

    profiles: list[HwProfile] = Field(default_factory=list)

    def get(self, name: str) -> HwProfile | None:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def profile_of(self, node_name: str) -> str | None:
        """Name of the first profile declaring ``node_name``."""
        for profile in self.profiles:
            if node_name in profile.nodes:
                return profile.name
        return None

    @classmethod
    def from_yaml(cls, text: str | None) -> HwProfileCatalog:
        return cls.model_validate(yaml.safe_load(text or "") or {})

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(), default_flow_style=False, sort_keys=False)


class AllocatedCloud(BaseModel):
    """Assignments held by one pool."""

    model_config = ConfigDict(populate_by_name=True)

    cloud_id: str = Field(..., alias="cloudID")
    nodegroups: dict[str, list[str]] = Field(default_factory=dict)

    def nodes(self) -> list[str]:
        return [name for names in self.nodegroups.values() for name in names]


class AllocatedNodes(BaseModel):
    """The ``allocated`` section of the inventory record."""

    clouds: list[AllocatedCloud] = Field(default_factory=list)

    def find(self, pool_id: str) -> AllocatedCloud | None:
        for cloud in self.clouds:
            if cloud.cloud_id == pool_id:
                return cloud
        return None

    def ensure(self, pool_id: str) -> AllocatedCloud:
        """Return the pool's entry, appending an empty one if missing."""
        cloud = self.find(pool_id)
        if cloud is None:
            cloud = AllocatedCloud(cloud_id=pool_id)
            self.clouds.append(cloud)
        return cloud

    def remove(self, pool_id: str) -> AllocatedCloud | None:
        cloud = self.find(pool_id)
        if cloud is not None:
            self.clouds.remove(cloud)
        return cloud

    def in_use(self) -> set[str]:
        return {name for cloud in self.clouds for name in cloud.nodes()}

    def assigned(self, pool_id: str, group_name: str) -> list[str]:
        cloud = self.find(pool_id)
        if cloud is None:
            return []
        return cloud.nodegroups.get(group_name, [])

    @classmethod
    def from_yaml(cls, text: str | None) -> AllocatedNodes:
        return cls.model_validate(yaml.safe_load(text or "") or {})

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.model_dump(by_alias=True),
            default_flow_style=False,
            sort_keys=False,
        )
