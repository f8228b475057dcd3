"""Shared test fixtures for pytest."""

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from hwmgr.config import Settings
from hwmgr.db.models import NodePoolRecord
from hwmgr.metrics import metrics
from hwmgr.schemas import HwProfile, HwProfileCatalog
from hwmgr.service import HwMgrService


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with an empty metrics registry."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test database file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'hwmgr.db'}",
        namespace="hwmgr-test",
        log_level="WARNING",
        auto_reconcile=False,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    """Session factory over a fresh database for each test."""
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        connect_args={"timeout": settings.store_timeout_seconds},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def get_test_session():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    yield get_test_session

    await engine.dispose()


@pytest.fixture
def service(settings, session_factory) -> HwMgrService:
    """A fully wired service on the per-test database."""
    return HwMgrService.build(settings, session_factory=session_factory)


@pytest.fixture
def seed(service):
    """Write a hardware profile catalog given as ``{profile: [nodes]}``."""

    async def _seed(profiles: dict[str, list[str]]) -> None:
        catalog = HwProfileCatalog(
            profiles=[HwProfile(name=name, nodes=nodes) for name, nodes in profiles.items()]
        )
        await service.store.replace_catalog(catalog)

    return _seed


@pytest.fixture
def create_pool(service):
    """Create a NodePool from ``(group, profile, size)`` tuples."""

    async def _create(pool_id: str, *groups: tuple[str, str, int]) -> NodePoolRecord:
        pool = NodePoolRecord(
            name=pool_id,
            namespace=service.objects.namespace,
            node_groups=[
                {"name": name, "hwProfile": profile, "size": size}
                for name, profile, size in groups
            ],
        )
        return await service.objects.create(pool)

    return _create


@pytest.fixture
def patched_settings(monkeypatch, settings):
    """Route every ``get_settings`` lookup to the per-test settings."""
    import hwmgr.cli
    import hwmgr.config
    import hwmgr.db.engine
    import hwmgr.server

    for module in (hwmgr.config, hwmgr.db.engine, hwmgr.server, hwmgr.cli):
        monkeypatch.setattr(module, "get_settings", lambda: settings)

    # Reset engine to force a new connection
    hwmgr.db.engine._engine = None
    hwmgr.db.engine._session_factory = None

    yield settings

    hwmgr.db.engine._engine = None
    hwmgr.db.engine._session_factory = None


@pytest.fixture
def client(patched_settings):
    """Create a test client for the server with an isolated database."""
    from fastapi.testclient import TestClient

    from hwmgr.server import create_app

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
