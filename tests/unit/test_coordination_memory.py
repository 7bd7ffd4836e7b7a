"""Tests for svcwatch/core/coordination (core helpers and in-memory backend).

Covers:
- Path helpers
- ChildrenWatch resolution
- InMemoryCoordinationStore: CRUD, ephemeral nodes, watches, session expiry
"""

from __future__ import annotations

import asyncio

import pytest

from svcwatch.core.coordination import (
    ChildrenWatch,
    InMemoryCoordinationStore,
    InMemoryCoordinationTree,
    join_path,
    node_name,
    parent_path,
)
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    ErrorCode,
    NoSuchPathError,
    PathExistsError,
)


class TestPathHelpers:
    """Tests for path helper functions."""

    def test_join_path(self):
        """Test joining segments into an absolute path."""
        assert join_path("/instances", "i1") == "/instances/i1"
        assert join_path("instances/", "/i1/", "name") == "/instances/i1/name"
        assert join_path() == "/"

    def test_join_path_skips_empty(self):
        """Test empty segments are ignored."""
        assert join_path("/services", "", "worker") == "/services/worker"

    def test_parent_path(self):
        """Test parent of nested and top-level nodes."""
        assert parent_path("/instances/i1/name") == "/instances/i1"
        assert parent_path("/instances") == "/"

    def test_node_name(self):
        """Test last segment extraction."""
        assert node_name("/instances/i1") == "i1"
        assert node_name("/instances/") == "instances"


class TestChildrenWatch:
    """Tests for ChildrenWatch."""

    @pytest.mark.asyncio
    async def test_fire_resolves_once(self):
        """Test a fired watch resolves with its path."""
        watch = ChildrenWatch("/instances")
        watch.fire()
        watch.fire()

        assert watch.fired is True
        assert await watch.wait() == "/instances"

    @pytest.mark.asyncio
    async def test_fail_raises(self):
        """Test a failed watch raises the error on wait."""
        watch = ChildrenWatch("/instances")
        watch.fail(CoordinationConnectionError("lost"))

        assert watch.done is True
        assert watch.fired is False
        with pytest.raises(CoordinationConnectionError):
            await watch.wait()

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test cancelling discards the watch."""
        watch = ChildrenWatch("/instances")
        watch.cancel()
        watch.fire()

        assert watch.done is True
        assert watch.fired is False
        assert "done" in repr(watch)


class TestInMemoryCoordinationStore:
    """Tests for InMemoryCoordinationStore."""

    @pytest.fixture
    def tree(self):
        return InMemoryCoordinationTree()

    @pytest.fixture
    def store(self, tree):
        return InMemoryCoordinationStore(tree)

    @pytest.mark.asyncio
    async def test_connect_and_close(self, store, tree):
        """Test session lifecycle."""
        assert store.connected is False

        await store.connect()
        assert store.connected is True
        assert tree.session_count == 1

        await store.close()
        assert store.connected is False
        assert tree.session_count == 0

    @pytest.mark.asyncio
    async def test_operations_require_session(self, store):
        """Test operations fail with a connection error when disconnected."""
        with pytest.raises(CoordinationConnectionError) as exc_info:
            await store.get("/instances")

        assert exc_info.value.code == ErrorCode.CONNECTION_LOST
        assert isinstance(exc_info.value, ConnectionError)

    @pytest.mark.asyncio
    async def test_connection_refused(self, store, tree):
        """Test connect fails when the ensemble refuses sessions."""
        tree.accepting_connections = False

        with pytest.raises(CoordinationConnectionError):
            await store.connect()

    @pytest.mark.asyncio
    async def test_create_get_set(self, store):
        """Test basic node CRUD."""
        await store.connect()
        await store.create("/a", "one")

        assert await store.get("/a") == "one"
        await store.set("/a", "two")
        assert await store.get("/a") == "two"
        assert await store.exists("/a") is True
        assert await store.exists("/b") is False

    @pytest.mark.asyncio
    async def test_create_requires_parent(self, store):
        """Test creating under a missing parent fails."""
        await store.connect()

        with pytest.raises(NoSuchPathError):
            await store.create("/missing/child")

    @pytest.mark.asyncio
    async def test_create_existing(self, store):
        """Test duplicate create raises PathExistsError."""
        await store.connect()
        await store.create("/a")

        with pytest.raises(PathExistsError) as exc_info:
            await store.create("/a")

        assert exc_info.value.path == "/a"

    @pytest.mark.asyncio
    async def test_ephemeral_cannot_have_children(self, store):
        """Test ephemeral nodes are leaves."""
        await store.connect()
        await store.create("/e", ephemeral=True)

        with pytest.raises(CoordinationError):
            await store.create("/e/child")

    @pytest.mark.asyncio
    async def test_set_missing(self, store):
        """Test setting a missing node raises NoSuchPathError."""
        await store.connect()

        with pytest.raises(NoSuchPathError):
            await store.set("/nope", "1")

    @pytest.mark.asyncio
    async def test_children_sorted(self, store):
        """Test children are listed by name."""
        await store.connect()
        await store.ensure_path("/root")
        for name in ("c", "a", "b"):
            await store.create(f"/root/{name}")

        assert await store.children("/root") == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_ensure_path_idempotent(self, store):
        """Test ensure_path creates missing ancestors and tolerates existing ones."""
        await store.connect()
        await store.ensure_path("/services/worker/1.0")
        await store.ensure_path("/services/worker/1.0")

        assert await store.children("/services") == ["worker"]
        assert await store.children("/services/worker") == ["1.0"]

    @pytest.mark.asyncio
    async def test_delete_non_empty(self, store):
        """Test deleting a node with children needs recursive."""
        await store.connect()
        await store.ensure_path("/a/b")

        with pytest.raises(CoordinationError):
            await store.delete("/a")

        await store.delete("/a", recursive=True)
        assert await store.exists("/a") is False

    @pytest.mark.asyncio
    async def test_watch_fires_on_child_created(self, store):
        """Test a children watch fires when a child is added."""
        await store.connect()
        await store.ensure_path("/instances")

        children, watch = await store.watch_children("/instances")
        assert children == []
        assert watch.done is False

        await store.create("/instances/i1")

        assert watch.fired is True

    @pytest.mark.asyncio
    async def test_watch_fires_once(self, store, tree):
        """Test watches are one-shot."""
        await store.connect()
        await store.ensure_path("/instances")
        _, watch = await store.watch_children("/instances")

        await store.create("/instances/i1")
        assert tree.pending_watches("/instances") == 0

        _, second = await store.watch_children("/instances")
        assert tree.pending_watches("/instances") == 1
        await store.create("/instances/i2")
        assert second.fired is True

    @pytest.mark.asyncio
    async def test_cancelled_watches_dropped(self, store, tree):
        """Test arming a watch drops the cancelled ones on the same path."""
        await store.connect()
        await store.ensure_path("/instances")
        for _ in range(3):
            _, watch = await store.watch_children("/instances")
            watch.cancel()

        await store.watch_children("/instances")

        assert len(tree._watches["/instances"]) == 1
        assert tree.pending_watches("/instances") == 1

    @pytest.mark.asyncio
    async def test_watch_ignores_value_changes(self, store):
        """Test setting a child's value does not fire a children watch."""
        await store.connect()
        await store.ensure_path("/instances/i1")
        await store.create("/instances/i1/registered", "0")
        _, watch = await store.watch_children("/instances/i1")

        await store.set("/instances/i1/registered", "1")

        assert watch.done is False

    @pytest.mark.asyncio
    async def test_expiry_removes_ephemeral_nodes(self, tree):
        """Test session expiry drops ephemeral nodes and fires other sessions' watches."""
        owner = InMemoryCoordinationStore(tree)
        observer = InMemoryCoordinationStore(tree)
        await owner.connect()
        await observer.connect()

        await owner.ensure_path("/instances/i1")
        await owner.create("/instances/i1/name", "worker", ephemeral=True)
        _, watch = await observer.watch_children("/instances/i1")

        owner.expire_session()

        assert owner.connected is False
        assert await observer.exists("/instances/i1") is True
        assert await observer.exists("/instances/i1/name") is False
        assert watch.fired is True

    @pytest.mark.asyncio
    async def test_expiry_fails_own_watches(self, store):
        """Test session expiry fails the session's pending watches."""
        await store.connect()
        await store.ensure_path("/instances")
        _, watch = await store.watch_children("/instances")

        store.expire_session()

        with pytest.raises(CoordinationConnectionError):
            await asyncio.wait_for(watch.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_reconnect_opens_new_session(self, store):
        """Test reconnect after expiry yields a fresh session."""
        await store.connect()
        first = store.session_id
        store.expire_session()

        await store.reconnect()

        assert store.connected is True
        assert store.session_id != first
