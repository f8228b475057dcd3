"""FastAPI hardware manager server.

Exposes endpoints for:
- The hardware profile catalog and current allocations
- Node pool requests and their status
- On-demand reconciliation
- Provisioned nodes

Node pools created or edited through the API are handed to the
reconcile dispatcher, which drives them to Provisioned in the background.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from hwmgr import __version__
from hwmgr.config import get_settings
from hwmgr.db import ConfigRecord, NodePoolRecord, NodeRecord, close_db, init_db
from hwmgr.dispatcher import ReconcileDispatcher
from hwmgr.errors import HwMgrError
from hwmgr.logging import configure_logging, get_logger
from hwmgr.metrics import metrics
from hwmgr.middleware import RequestTracingMiddleware
from hwmgr.reconciler import derive_state, pool_groups
from hwmgr.schemas import (
    AllocatedNodes,
    ConditionView,
    FreeNodesResponse,
    HwProfileCatalog,
    NodeListResponse,
    NodePoolCreate,
    NodePoolListResponse,
    NodePoolResponse,
    NodePoolUpdate,
    NodeResponse,
    ReconcileResponse,
)
from hwmgr.service import HwMgrService
from hwmgr.store import retry_on_conflict

logger = get_logger(__name__)


def _condition_view(condition: dict) -> ConditionView:
    return ConditionView(
        type=condition["type"],
        status=condition["status"],
        reason=condition.get("reason", ""),
        message=condition.get("message", ""),
        last_transition_time=datetime.fromisoformat(condition["lastTransitionTime"]),
    )


def _node_response(node: NodeRecord) -> NodeResponse:
    return NodeResponse(
        name=node.name,
        namespace=node.namespace,
        node_pool=node.node_pool,
        group_name=node.group_name,
        hw_profile=node.hw_profile,
        created_at=node.created_at,
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    service = HwMgrService.build(settings)
    dispatcher = ReconcileDispatcher(
        service.reconciler.reconcile,
        workers=settings.workers,
        error_backoff=settings.requeue_medium_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            json_format=not settings.debug,
            level="DEBUG" if settings.debug else settings.log_level,
        )
        logger.info(
            "server_starting",
            version=__version__,
            host=settings.host,
            port=settings.port,
            namespace=settings.namespace,
        )
        logger.info("database_init", database_url=settings.database_url)
        await init_db()
        if settings.auto_reconcile:
            pools = await service.objects.list(NodePoolRecord)
            await dispatcher.start(pool.name for pool in pools)
        yield
        await dispatcher.stop()
        await close_db()
        logger.info("server_shutdown")

    app = FastAPI(
        title="hwmgr",
        description="Hardware node pool manager",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.dispatcher = dispatcher
    app.add_middleware(RequestTracingMiddleware)

    @app.exception_handler(HwMgrError)
    async def hwmgr_error_handler(request: Request, exc: HwMgrError) -> JSONResponse:
        logger.warning("request_error", code=exc.code, error=exc.message)
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(int(exc.retry_after))
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_response(),
            headers=headers,
        )

    async def pool_response(pool: NodePoolRecord) -> NodePoolResponse:
        nodes = await service.provisioner.list(pool.name)
        return NodePoolResponse(
            id=pool.name,
            namespace=pool.namespace,
            node_groups=pool_groups(pool),
            generation=pool.generation,
            observed_generation=pool.observed_generation,
            state=derive_state(pool.conditions).value,
            conditions=[_condition_view(c) for c in pool.conditions],
            allocated_nodes=sorted(node.name for node in nodes),
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics() -> PlainTextResponse:
        """Return Prometheus-formatted metrics."""
        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        return metrics.get_stats()

    # =========================================================================
    # Inventory
    # =========================================================================

    @app.get("/v1/hwprofiles", response_model=HwProfileCatalog)
    async def get_hwprofiles() -> HwProfileCatalog:
        await service.objects.get(ConfigRecord, settings.inventory_record)
        inventory = await service.store.load()
        return inventory.catalog

    @app.put("/v1/hwprofiles", response_model=HwProfileCatalog)
    async def replace_hwprofiles(catalog: HwProfileCatalog) -> HwProfileCatalog:
        """Replace the hardware profile catalog.

        Every pool is queued again, since pools waiting on capacity may
        now fit.
        """
        await service.store.replace_catalog(catalog)
        for pool in await service.objects.list(NodePoolRecord):
            dispatcher.enqueue(pool.name)
        return catalog

    @app.get("/v1/hwprofiles/{profile}/free", response_model=FreeNodesResponse)
    async def get_free_nodes(profile: str) -> FreeNodesResponse:
        free = await service.engine.free_nodes(profile)
        return FreeNodesResponse(profile=profile, free=free, count=len(free))

    @app.get("/v1/allocations", response_model=AllocatedNodes)
    async def get_allocations() -> AllocatedNodes:
        inventory = await service.store.load()
        return inventory.allocated

    # =========================================================================
    # Node pools
    # =========================================================================

    @app.post("/v1/nodepools", response_model=NodePoolResponse, status_code=201)
    async def create_nodepool(request: NodePoolCreate) -> NodePoolResponse:
        pool = NodePoolRecord(
            name=request.id,
            namespace=settings.namespace,
            node_groups=[g.model_dump(by_alias=True) for g in request.node_groups],
        )
        await service.objects.create(pool)
        logger.info("nodepool_created", pool_id=pool.name, groups=len(request.node_groups))
        dispatcher.enqueue(pool.name)
        return await pool_response(pool)

    @app.get("/v1/nodepools", response_model=NodePoolListResponse)
    async def list_nodepools(
        state: str | None = Query(default=None, description="Filter by derived state"),
    ) -> NodePoolListResponse:
        pools = await service.objects.list(NodePoolRecord)
        responses = [await pool_response(pool) for pool in pools]
        if state:
            responses = [r for r in responses if r.state == state]
        return NodePoolListResponse(pools=responses, count=len(responses))

    @app.get("/v1/nodepools/{pool_id}", response_model=NodePoolResponse)
    async def get_nodepool(pool_id: str) -> NodePoolResponse:
        pool = await service.objects.get(NodePoolRecord, pool_id)
        return await pool_response(pool)

    @app.put("/v1/nodepools/{pool_id}", response_model=NodePoolResponse)
    async def update_nodepool(pool_id: str, request: NodePoolUpdate) -> NodePoolResponse:
        """Replace a pool's node groups and bump its generation."""
        groups = [g.model_dump(by_alias=True) for g in request.node_groups]

        async def _attempt() -> NodePoolRecord:
            pool = await service.objects.get(NodePoolRecord, pool_id)
            if pool.node_groups == groups:
                return pool
            pool.node_groups = groups
            pool.generation += 1
            return await service.objects.update(pool)

        pool = await retry_on_conflict(_attempt, settings.conflict_retries, f"NodePool {pool_id}")
        logger.info("nodepool_updated", pool_id=pool_id, generation=pool.generation)
        dispatcher.enqueue(pool_id)
        return await pool_response(pool)

    @app.delete("/v1/nodepools/{pool_id}")
    async def delete_nodepool(pool_id: str) -> dict:
        """Release a pool's nodes and delete the pool."""
        await service.objects.get(NodePoolRecord, pool_id)
        async with dispatcher.lock(pool_id):
            released = await service.reconciler.delete_pool(pool_id)
        dispatcher.forget(pool_id)
        return {"id": pool_id, "released": released}

    @app.post("/v1/nodepools/{pool_id}/reconcile", response_model=ReconcileResponse)
    async def reconcile_nodepool(pool_id: str) -> ReconcileResponse:
        """Run one reconcile pass now and report the outcome."""
        async with dispatcher.lock(pool_id):
            await service.objects.get(NodePoolRecord, pool_id)
            result = await service.reconciler.reconcile(pool_id)
            pool = await service.objects.get(NodePoolRecord, pool_id)
        return ReconcileResponse(
            id=pool_id,
            state=(result.state or derive_state(pool.conditions)).value,
            requeue_after=result.requeue_after,
            conditions=pool.conditions,
        )

    # =========================================================================
    # Nodes
    # =========================================================================

    @app.get("/v1/nodes", response_model=NodeListResponse)
    async def list_nodes(
        pool: str | None = Query(default=None, description="Filter by node pool"),
        hw_profile: str | None = Query(default=None, description="Filter by hardware profile"),
    ) -> NodeListResponse:
        nodes = await service.provisioner.list(pool)
        if hw_profile:
            nodes = [n for n in nodes if n.hw_profile == hw_profile]
        return NodeListResponse(nodes=[_node_response(n) for n in nodes], count=len(nodes))

    @app.get("/v1/nodes/{node_name}", response_model=NodeResponse)
    async def get_node(node_name: str) -> NodeResponse:
        return _node_response(await service.objects.get(NodeRecord, node_name))

    return app


# Application instance for uvicorn
app = create_app()
