"""Node pool API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeGroup(BaseModel):
    """A group of nodes drawn from one hardware profile."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Group name, unique within the pool")
    hw_profile: str = Field(..., alias="hwProfile", description="Hardware profile to draw nodes from")
    size: int = Field(..., ge=0, description="Number of nodes requested")


def require_unique_group_names(groups: list[NodeGroup]) -> list[NodeGroup]:
    """Reject repeated group names; allocations are recorded per group name."""
    seen: set[str] = set()
    for group in groups:
        if group.name in seen:
            raise ValueError(f"duplicate node group name {group.name!r}")
        seen.add(group.name)
    return groups


class NodePoolCreate(BaseModel):
    """Request to create a node pool."""

    id: str = Field(..., description="Pool identifier")
    node_groups: list[NodeGroup] = Field(default_factory=list)

    @field_validator("node_groups")
    @classmethod
    def unique_group_names(cls, groups: list[NodeGroup]) -> list[NodeGroup]:
        return require_unique_group_names(groups)


class NodePoolUpdate(BaseModel):
    """Request to replace a pool's node groups."""

    node_groups: list[NodeGroup]

    @field_validator("node_groups")
    @classmethod
    def unique_group_names(cls, groups: list[NodeGroup]) -> list[NodeGroup]:
        return require_unique_group_names(groups)


class ConditionView(BaseModel):
    """A status condition as returned by the API."""

    type: str
    status: bool
    reason: str
    message: str
    last_transition_time: datetime


class NodePoolResponse(BaseModel):
    """A node pool with its status."""

    id: str
    namespace: str
    node_groups: list[NodeGroup]
    generation: int
    observed_generation: int
    state: str
    conditions: list[ConditionView]
    allocated_nodes: list[str] = Field(default_factory=list)


class NodePoolListResponse(BaseModel):
    """Response for listing node pools."""

    pools: list[NodePoolResponse]
    count: int


class NodeResponse(BaseModel):
    """A provisioned node."""

    name: str
    namespace: str
    node_pool: str
    group_name: str
    hw_profile: str
    created_at: datetime


class NodeListResponse(BaseModel):
    """Response for listing nodes."""

    nodes: list[NodeResponse]
    count: int


class FreeNodesResponse(BaseModel):
    """Free nodes remaining in a hardware profile."""

    profile: str
    free: list[str]
    count: int


class ReconcileResponse(BaseModel):
    """Outcome of one reconcile pass."""

    id: str
    state: str
    requeue_after: float | None = Field(
        default=None,
        description="Seconds until the pool should be reconciled again",
    )
    conditions: list[dict[str, Any]] = Field(default_factory=list)
