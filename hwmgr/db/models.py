"""Database models for hwmgr persistence.

All models use SQLModel for Pydantic + SQLAlchemy integration.
Every stored object is addressed by ``(namespace, name)`` and carries a
``resource_version`` that is bumped on each write, which is what the
object store uses for optimistic concurrency.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar

from sqlmodel import JSON, Column, Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class StoredObject(SQLModel):
    """Metadata shared by every persisted object."""

    kind: ClassVar[str] = "Object"
    status_fields: ClassVar[tuple[str, ...]] = ()

    name: str = Field(primary_key=True)
    namespace: str = Field(default="default", primary_key=True)
    resource_version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)

    # Owner reference, only set for same-namespace owners
    owner_kind: str | None = Field(default=None, index=True)
    owner_name: str | None = Field(default=None, index=True)


class ConfigRecord(StoredObject, table=True):
    """A versioned record of named text sections.

    The hardware inventory lives in one of these: a ``hwprofiles`` section
    holding the catalog and an ``allocated`` section holding assignments.
    """

    __tablename__ = "config_records"
    __table_args__ = {"extend_existing": True}

    kind: ClassVar[str] = "ConfigRecord"

    data: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))


class NodePoolRecord(StoredObject, table=True):
    """A request for groups of nodes, plus its reconciliation status."""

    __tablename__ = "node_pools"
    __table_args__ = {"extend_existing": True}

    kind: ClassVar[str] = "NodePool"
    status_fields: ClassVar[tuple[str, ...]] = ("conditions", "observed_generation")

    node_groups: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    generation: int = Field(default=1)

    # Status
    conditions: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    observed_generation: int = Field(default=0)


class NodeRecord(StoredObject, table=True):
    """A provisioned node, one per entry in the allocation record."""

    __tablename__ = "nodes"
    __table_args__ = {"extend_existing": True}

    kind: ClassVar[str] = "Node"

    node_pool: str = Field(index=True)
    group_name: str
    hw_profile: str = Field(index=True)


# Models whose rows can be owned by another object and cascade on its deletion
OWNED_MODELS: tuple[type[StoredObject], ...] = (NodeRecord,)
