"""Tests for the versioned object store."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from hwmgr.db.models import ConfigRecord, NodePoolRecord, NodeRecord
from hwmgr.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from hwmgr.store import ObjectStore, WriteMode, retry_on_conflict


def _node(name: str, namespace: str = "hwmgr-test") -> NodeRecord:
    return NodeRecord(
        name=name,
        namespace=namespace,
        node_pool="p1",
        group_name="g1",
        hw_profile="edge-profile",
    )


@pytest.mark.asyncio
class TestCrud:
    """Tests for create, get, list, update and delete."""

    async def test_create_and_get(self, service):
        objects = service.objects
        await objects.create(ConfigRecord(name="cfg", namespace=objects.namespace, data={"a": "1"}))

        record = await objects.get(ConfigRecord, "cfg")
        assert record.data == {"a": "1"}
        assert record.resource_version == 1

    async def test_get_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.objects.get(ConfigRecord, "missing")

    async def test_create_duplicate(self, service):
        await service.objects.create(_node("n1"))
        with pytest.raises(AlreadyExistsError):
            await service.objects.create(_node("n1"))

    async def test_same_name_in_other_namespace(self, service):
        await service.objects.create(_node("n1"))
        await service.objects.create(_node("n1", namespace="elsewhere"))

        assert len(await service.objects.list(NodeRecord)) == 1
        assert len(await service.objects.list(NodeRecord, namespace="elsewhere")) == 1

    async def test_list_filters(self, service):
        await service.objects.create(_node("n1"))
        other = _node("n2")
        other.node_pool = "p2"
        await service.objects.create(other)

        nodes = await service.objects.list(NodeRecord, node_pool="p2")
        assert [n.name for n in nodes] == ["n2"]

    async def test_update_bumps_version(self, service):
        objects = service.objects
        await objects.create(ConfigRecord(name="cfg", namespace=objects.namespace))

        record = await objects.get(ConfigRecord, "cfg")
        record.data = {"a": "2"}
        await objects.update(record)

        stored = await objects.get(ConfigRecord, "cfg")
        assert stored.data == {"a": "2"}
        assert stored.resource_version == record.resource_version == 2

    async def test_stale_update_conflicts(self, service):
        objects = service.objects
        await objects.create(ConfigRecord(name="cfg", namespace=objects.namespace))
        first = await objects.get(ConfigRecord, "cfg")
        second = await objects.get(ConfigRecord, "cfg")

        first.data = {"writer": "first"}
        await objects.update(first)

        second.data = {"writer": "second"}
        with pytest.raises(ConflictError):
            await objects.update(second)
        assert (await objects.get(ConfigRecord, "cfg")).data == {"writer": "first"}

    async def test_update_missing(self, service):
        record = ConfigRecord(name="ghost", namespace=service.objects.namespace, resource_version=1)
        with pytest.raises(NotFoundError):
            await service.objects.update(record)

    async def test_delete_is_idempotent(self, service):
        await service.objects.create(_node("n1"))

        assert await service.objects.delete(NodeRecord, "n1") is True
        assert await service.objects.delete(NodeRecord, "n1") is False


@pytest.mark.asyncio
class TestCreateOrUpdate:
    """Tests for create_or_update write modes and owner references."""

    async def test_creates_when_missing(self, service):
        node = await service.objects.create_or_update(_node("n1"), mode=WriteMode.CREATE)
        assert node.resource_version == 1

    async def test_create_mode_rejects_existing(self, service):
        await service.objects.create(_node("n1"))
        with pytest.raises(AlreadyExistsError):
            await service.objects.create_or_update(_node("n1"), mode=WriteMode.CREATE)

    async def test_update_mode_overwrites(self, service):
        await service.objects.create(_node("n1"))
        replacement = _node("n1")
        replacement.group_name = "g2"

        await service.objects.create_or_update(replacement)

        stored = await service.objects.get(NodeRecord, "n1")
        assert stored.group_name == "g2"
        assert stored.resource_version == 2

    async def test_patch_mode_keeps_unset_fields(self, service, create_pool):
        await create_pool("p1", ("g1", "edge-profile", 2))

        patch = NodePoolRecord(name="p1", namespace=service.objects.namespace, generation=5)
        await service.objects.create_or_update(patch, mode=WriteMode.PATCH)

        stored = await service.objects.get(NodePoolRecord, "p1")
        assert stored.generation == 5
        assert stored.node_groups == [{"name": "g1", "hwProfile": "edge-profile", "size": 2}]

    async def test_owner_in_same_namespace(self, service, create_pool):
        pool = await create_pool("p1")

        node = await service.objects.create_or_update(_node("n1"), owner=pool)

        assert node.owner_kind == "NodePool"
        assert node.owner_name == "p1"

    async def test_owner_in_other_namespace_is_ignored(self, service, create_pool):
        pool = await create_pool("p1")

        node = await service.objects.create_or_update(_node("n1", namespace="elsewhere"), owner=pool)

        assert node.owner_kind is None
        assert node.owner_name is None

    async def test_delete_cascades_to_owned(self, service, create_pool):
        pool = await create_pool("p1")
        await service.objects.create_or_update(_node("n1"), owner=pool)
        await service.objects.create(_node("n2"))

        await service.objects.delete(NodePoolRecord, "p1")

        remaining = await service.objects.list(NodeRecord)
        assert [n.name for n in remaining] == ["n2"]


@pytest.mark.asyncio
class TestUpdateStatus:
    """Tests for status writes."""

    async def test_status_survives_concurrent_spec_edit(self, service, create_pool):
        stale = await create_pool("p1", ("g1", "edge-profile", 1))

        edited = await service.objects.get(NodePoolRecord, "p1")
        edited.generation = 2
        await service.objects.update(edited)

        stale.conditions = [{"type": "Provisioned", "status": True}]
        stale.observed_generation = 1
        await service.objects.update_status(stale)

        stored = await service.objects.get(NodePoolRecord, "p1")
        assert stored.generation == 2
        assert stored.observed_generation == 1
        assert stored.conditions == [{"type": "Provisioned", "status": True}]
        assert stale.resource_version == stored.resource_version

    async def test_status_of_missing_object(self, service):
        pool = NodePoolRecord(name="ghost", namespace=service.objects.namespace)
        with pytest.raises(NotFoundError):
            await service.objects.update_status(pool)


@pytest.mark.asyncio
class TestStoreFailures:
    """Tests for bounded calls and conflict retries."""

    async def test_timeout_is_unavailable(self):
        @asynccontextmanager
        async def slow_session():
            await asyncio.sleep(1)
            yield None

        objects = ObjectStore("hwmgr-test", session_factory=slow_session, timeout=0.01)
        with pytest.raises(StoreUnavailableError, match="timed out"):
            await objects.get(ConfigRecord, "nodelist")

    async def test_retry_until_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConflictError("stale")
            return "done"

        assert await retry_on_conflict(flaky, 5, "thing") == "done"
        assert len(attempts) == 3

    async def test_retry_gives_up(self):
        attempts = []

        async def always_stale():
            attempts.append(1)
            raise ConflictError("stale")

        with pytest.raises(StoreUnavailableError, match="3 conflicting attempts"):
            await retry_on_conflict(always_stale, 3, "thing")
        assert len(attempts) == 3
