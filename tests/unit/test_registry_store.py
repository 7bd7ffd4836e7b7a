"""Tests for svcwatch/core/service_registry/store.py.

Covers:
- Layout written by register, and its removal by deregister
- Duplicate registration and compensation on partial failure
- Active flag, update, fresh listing and index listings
"""

from __future__ import annotations

import pytest

from svcwatch.core.coordination.memory import InMemoryCoordinationStore, InMemoryCoordinationTree
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    ErrorCode,
    InvalidDataError,
    NoSuchPathError,
    PartialWriteError,
    RegistrationConflict,
)
from svcwatch.core.service_registry.core import BindAddr, MatchMode, ServiceDescriptor, ServiceQuery
from svcwatch.core.service_registry.store import RegistryStore


def make_descriptor(instance_id="i1", name="worker", version="1.0", region="us", host="10.0.0.1"):
    return ServiceDescriptor(instance_id, name, version, region, BindAddr(host, 9000))


class FlakyStore(InMemoryCoordinationStore):
    """In-memory store that fails selected reads and writes."""

    def __init__(self, tree=None):
        super().__init__(tree)
        self.fail_create = {}
        self.fail_delete = set()
        self.fail_get = {}
        self.skip_ensure = set()

    async def ensure_path(self, path):
        if path in self.skip_ensure:
            self.skip_ensure.discard(path)
            return
        await super().ensure_path(path)

    async def get(self, path):
        if path in self.fail_get:
            raise self.fail_get[path]
        return await super().get(path)

    async def create(self, path, value="", ephemeral=False):
        if path in self.fail_create:
            raise self.fail_create[path]
        return await super().create(path, value, ephemeral)

    async def delete(self, path, recursive=False):
        if path in self.fail_delete:
            raise CoordinationError("delete refused", path=path)
        await super().delete(path, recursive)


@pytest.fixture
def tree():
    return InMemoryCoordinationTree()


@pytest.fixture
def coordination(tree):
    return FlakyStore(tree)


@pytest.fixture
def store(coordination):
    return RegistryStore(coordination)


async def _ready(store):
    await store.coordination.connect()
    await store.bootstrap()
    return store


class TestRegister:
    """Tests for registration."""

    @pytest.mark.asyncio
    async def test_bootstrap_creates_roots(self, store):
        """Test the four roots exist after bootstrap."""
        await _ready(store)

        for root in ("/instances", "/services", "/regions", "/hosts"):
            assert await store.coordination.exists(root) is True

    @pytest.mark.asyncio
    async def test_register_writes_layout(self, store):
        """Test instance leaves and index entries are written."""
        await _ready(store)
        c = store.coordination

        await store.register(make_descriptor())

        assert await c.get("/instances/i1/name") == "worker"
        assert await c.get("/instances/i1/version") == "1.0"
        assert await c.get("/instances/i1/region") == "us"
        assert await c.get("/instances/i1/addr") == "10.0.0.1:9000"
        assert await c.get("/instances/i1/registered") == "0"
        assert await c.exists("/regions/us/i1") is True
        assert await c.exists("/services/worker/i1") is True
        assert await c.exists("/services/worker/1.0/i1") is True
        assert await c.exists("/hosts/10.0.0.1/i1") is True

    @pytest.mark.asyncio
    async def test_register_leaves_are_ephemeral(self, store, tree):
        """Test every leaf disappears with the session."""
        await _ready(store)
        observer = InMemoryCoordinationStore(tree)
        await observer.connect()
        await store.register(make_descriptor())

        store.coordination.expire_session()

        assert await observer.children("/instances/i1") == []
        assert await observer.children("/regions/us") == []
        assert await observer.children("/hosts/10.0.0.1") == []

    @pytest.mark.asyncio
    async def test_register_duplicate(self, store):
        """Test a second registration of the same id conflicts."""
        await _ready(store)
        await store.register(make_descriptor())

        with pytest.raises(RegistrationConflict) as exc_info:
            await store.register(make_descriptor(region="eu"))

        assert exc_info.value.code == ErrorCode.REGISTRATION_CONFLICT
        assert await store.coordination.exists("/regions/eu/i1") is False
        assert await store.coordination.get("/instances/i1/region") == "us"

    @pytest.mark.asyncio
    async def test_partial_write_is_compensated(self, store, coordination):
        """Test a failed index write removes everything already written."""
        await _ready(store)
        cause = CoordinationError("disk full", path="/hosts/10.0.0.1/i1")
        coordination.fail_create["/hosts/10.0.0.1/i1"] = cause

        with pytest.raises(PartialWriteError) as exc_info:
            await store.register(make_descriptor())

        error = exc_info.value
        assert error.failed_path == "/hosts/10.0.0.1/i1"
        assert error.rolled_back is True
        assert len(error.written) == 8
        assert error.__cause__ is cause
        assert await coordination.children("/instances/i1") == []
        assert await coordination.exists("/regions/us/i1") is False
        assert await coordination.exists("/services/worker/i1") is False
        assert await coordination.exists("/services/worker/1.0/i1") is False
        assert await store.list_instances() == []

    @pytest.mark.asyncio
    async def test_partial_write_rollback_failure(self, store, coordination):
        """Test rolled_back is False when cleanup itself fails."""
        await _ready(store)
        coordination.fail_create["/services/worker/i1"] = CoordinationError("boom")
        coordination.fail_delete.add("/regions/us/i1")

        with pytest.raises(PartialWriteError) as exc_info:
            await store.register(make_descriptor())

        assert exc_info.value.rolled_back is False
        assert await coordination.exists("/regions/us/i1") is True
        assert await coordination.exists("/instances/i1/name") is False

    @pytest.mark.asyncio
    async def test_connection_error_propagates(self, store, coordination):
        """Test a lost connection is raised as is after removing what was written."""
        await _ready(store)
        coordination.fail_create["/instances/i1/addr"] = CoordinationConnectionError("lost")

        with pytest.raises(CoordinationConnectionError):
            await store.register(make_descriptor())

        # The session survived, so the first leaf would otherwise linger
        assert await coordination.exists("/instances/i1/registered") is False

    @pytest.mark.asyncio
    async def test_connection_error_cleanup_is_best_effort(self, store, coordination):
        """Test a failing cleanup still raises the connection error."""
        await _ready(store)
        coordination.fail_create["/instances/i1/addr"] = CoordinationConnectionError("lost")
        coordination.fail_delete.add("/instances/i1/registered")

        with pytest.raises(CoordinationConnectionError):
            await store.register(make_descriptor())

    @pytest.mark.asyncio
    async def test_register_recreates_pruned_branch(self, store, coordination):
        """Test registration survives its empty branch being pruned before the first write."""
        await _ready(store)
        coordination.skip_ensure.add("/instances/i1")

        await store.register(make_descriptor())

        assert await store.read_instance("i1") == make_descriptor()


class TestInstanceState:
    """Tests for the active flag, deregistration and update."""

    @pytest.mark.asyncio
    async def test_set_active(self, store):
        """Test toggling the active flag."""
        await _ready(store)
        await store.register(make_descriptor())

        assert await store.is_active("i1") is False
        await store.set_active("i1", True)
        assert await store.is_active("i1") is True
        await store.set_active("i1", False)
        assert await store.is_active("i1") is False

    @pytest.mark.asyncio
    async def test_set_active_unknown(self, store):
        """Test setting the flag of an unknown id fails."""
        await _ready(store)

        with pytest.raises(NoSuchPathError):
            await store.set_active("nope", True)

    @pytest.mark.asyncio
    async def test_deregister(self, store):
        """Test deregistration removes the branch and index entries."""
        await _ready(store)
        await store.register(make_descriptor())

        removed = await store.deregister("i1")

        assert removed == make_descriptor()
        c = store.coordination
        assert await c.exists("/instances/i1") is False
        assert await c.exists("/regions/us/i1") is False
        assert await c.exists("/services/worker/i1") is False
        assert await c.exists("/services/worker/1.0/i1") is False
        assert await c.exists("/hosts/10.0.0.1/i1") is False

    @pytest.mark.asyncio
    async def test_deregister_unknown(self, store):
        """Test deregistering an unknown id fails."""
        await _ready(store)

        with pytest.raises(NoSuchPathError):
            await store.deregister("nope")

    @pytest.mark.asyncio
    async def test_register_after_deregister(self, store):
        """Test an id can be registered again once removed."""
        await _ready(store)
        await store.register(make_descriptor())
        await store.deregister("i1")

        await store.register(make_descriptor())

        assert [d.instance_id for d in await store.list_instances()] == ["i1"]

    @pytest.mark.asyncio
    async def test_update_moves_index_and_keeps_flag(self, store):
        """Test update rewrites fields and index entries, preserving the active flag."""
        await _ready(store)
        await store.register(make_descriptor())
        await store.set_active("i1", True)

        previous = await store.update(make_descriptor(region="eu", version="2.0"))

        c = store.coordination
        assert previous.region == "us"
        assert await c.get("/instances/i1/region") == "eu"
        assert await c.exists("/regions/us/i1") is False
        assert await c.exists("/regions/eu/i1") is True
        assert await c.exists("/services/worker/2.0/i1") is True
        assert await store.is_active("i1") is True

    @pytest.mark.asyncio
    async def test_update_unknown(self, store):
        """Test updating an unknown id fails."""
        await _ready(store)

        with pytest.raises(NoSuchPathError):
            await store.update(make_descriptor("nope"))

    @pytest.mark.asyncio
    async def test_update_failure_restores_previous(self, store, coordination):
        """Test a failed update puts the old descriptor and active flag back."""
        await _ready(store)
        await store.register(make_descriptor())
        await store.set_active("i1", True)
        coordination.fail_create["/regions/eu/i1"] = CoordinationError("refused")

        with pytest.raises(PartialWriteError):
            await store.update(make_descriptor(region="eu"))

        assert await store.read_instance("i1") == make_descriptor()
        assert await store.is_active("i1") is True
        assert await coordination.exists("/regions/us/i1") is True
        assert await coordination.exists("/regions/eu/i1") is False

    @pytest.mark.asyncio
    async def test_update_failure_when_restore_fails(self, store, coordination):
        """Test the original error is raised when the old descriptor cannot be restored."""
        await _ready(store)
        await store.register(make_descriptor())
        coordination.fail_create["/instances/i1/registered"] = CoordinationError("refused")

        with pytest.raises(PartialWriteError) as exc_info:
            await store.update(make_descriptor(region="eu"))

        assert exc_info.value.instance_id == "i1"
        assert await store.read_instance("i1") is None


class TestListing:
    """Tests for fresh listings."""

    @pytest.mark.asyncio
    async def test_list_instances(self, store):
        """Test listing returns every complete instance."""
        await _ready(store)
        await store.register(make_descriptor("i1"))
        await store.register(make_descriptor("i2", name="api", region="eu", host="10.0.0.2"))

        listed = await store.list_instances()

        assert sorted(d.instance_id for d in listed) == ["i1", "i2"]

    @pytest.mark.asyncio
    async def test_list_instances_with_query(self, store):
        """Test query filtering in the default OR mode."""
        await _ready(store)
        await store.register(make_descriptor("i1"))
        await store.register(make_descriptor("i2", name="api", region="worker"))
        await store.register(make_descriptor("i3", name="api", region="eu"))

        listed = await store.list_instances(ServiceQuery(name="worker"))

        assert sorted(d.instance_id for d in listed) == ["i1", "i2"]

    @pytest.mark.asyncio
    async def test_list_instances_all_mode(self, coordination):
        """Test query filtering in ALL mode."""
        store = await _ready(RegistryStore(coordination, MatchMode.ALL))
        await store.register(make_descriptor("i1"))
        await store.register(make_descriptor("i2", name="api", region="worker"))

        listed = await store.list_instances(ServiceQuery(name="worker"))

        assert [d.instance_id for d in listed] == ["i1"]

    @pytest.mark.asyncio
    async def test_incomplete_instances_skipped(self, store):
        """Test an instance without its name leaf is not listed."""
        await _ready(store)
        c = store.coordination
        await c.ensure_path("/instances/half")
        await c.create("/instances/half/registered", "0", ephemeral=True)
        await c.create("/instances/half/addr", "10.0.0.9:1", ephemeral=True)

        assert await store.list_instances() == []
        assert await store.read_instance("half") is None
        assert await c.exists("/instances/half") is True

    @pytest.mark.asyncio
    async def test_undecodable_instance_skipped(self, store, coordination):
        """Test an instance with an unreadable leaf is skipped, not fatal to the listing."""
        await _ready(store)
        await store.register(make_descriptor("bad"))
        await store.register(make_descriptor("good"))
        coordination.fail_get["/instances/bad/name"] = InvalidDataError("not utf-8", path="/instances/bad/name")

        listed = await store.list_instances()

        assert [d.instance_id for d in listed] == ["good"]
        assert await coordination.exists("/instances/bad") is True

    @pytest.mark.asyncio
    async def test_expired_branches_pruned(self, store, coordination):
        """Test branches emptied by session expiry are removed by the next listing."""
        await _ready(store)
        for n in range(5):
            await store.register(make_descriptor(f"i{n}"))
            coordination.expire_session()
            await coordination.reconnect()

        assert await store.list_instances() == []
        assert await coordination.children("/instances") == []

    @pytest.mark.asyncio
    async def test_list_without_roots(self, coordination):
        """Test listings on an empty store return nothing."""
        store = RegistryStore(coordination)
        await coordination.connect()

        assert await store.list_instances() == []
        assert await store.list_services() == []
        assert await store.list_regions() == []
        assert await store.list_hosts() == []

    @pytest.mark.asyncio
    async def test_index_listings(self, store):
        """Test services, regions and hosts listings."""
        await _ready(store)
        await store.register(make_descriptor("i1"))
        await store.register(make_descriptor("i2", name="api", region="eu", host="10.0.0.2"))

        assert await store.list_services() == ["api", "worker"]
        assert await store.list_regions() == ["eu", "us"]
        assert await store.list_hosts() == ["10.0.0.1", "10.0.0.2"]
