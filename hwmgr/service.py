"""Wiring of the allocation core onto its collaborators."""

from __future__ import annotations

from dataclasses import dataclass

from hwmgr.config import Settings, get_settings
from hwmgr.db.engine import get_session
from hwmgr.engine import AllocationEngine
from hwmgr.inventory import AllocationStore
from hwmgr.provisioner import NodeProvisioner
from hwmgr.reconciler import NodePoolReconciler
from hwmgr.store import ObjectStore, SessionFactory


@dataclass
class HwMgrService:
    """The assembled hardware manager."""

    settings: Settings
    objects: ObjectStore
    store: AllocationStore
    provisioner: NodeProvisioner
    engine: AllocationEngine
    reconciler: NodePoolReconciler

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        session_factory: SessionFactory = get_session,
    ) -> HwMgrService:
        settings = settings or get_settings()
        objects = ObjectStore(
            namespace=settings.namespace,
            session_factory=session_factory,
            timeout=settings.store_timeout_seconds,
            conflict_retries=settings.conflict_retries,
        )
        store = AllocationStore(
            objects,
            record_name=settings.inventory_record,
            conflict_retries=settings.conflict_retries,
        )
        provisioner = NodeProvisioner(objects)
        engine = AllocationEngine(store, provisioner)
        reconciler = NodePoolReconciler(objects, engine, settings)
        return cls(
            settings=settings,
            objects=objects,
            store=store,
            provisioner=provisioner,
            engine=engine,
            reconciler=reconciler,
        )
