"""API and inventory schemas."""

from hwmgr.schemas.inventory import (
    AllocatedCloud,
    AllocatedNodes,
    HwProfile,
    HwProfileCatalog,
)
from hwmgr.schemas.nodepool import (
    ConditionView,
    FreeNodesResponse,
    NodeGroup,
    NodeListResponse,
    NodePoolCreate,
    NodePoolListResponse,
    NodePoolResponse,
    NodePoolUpdate,
    NodeResponse,
    ReconcileResponse,
    require_unique_group_names,
)

__all__ = [
    "AllocatedCloud",
    "AllocatedNodes",
    "ConditionView",
    "FreeNodesResponse",
    "HwProfile",
    "HwProfileCatalog",
    "NodeGroup",
    "NodeListResponse",
    "NodePoolCreate",
    "NodePoolListResponse",
    "NodePoolResponse",
    "NodePoolUpdate",
    "NodeResponse",
    "ReconcileResponse",
    "require_unique_group_names",
]
