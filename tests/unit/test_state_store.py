"""Tests for the tiered state store and the scoped accessor handed to tools."""

import asyncio
import json

import pytest

from taskrelay.domain.state.state_store import (
    BROADCASTABLE_CLASSES,
    InMemoryStateStore,
    JsonFileStateStore,
    ScopedStateAccessor,
    VisibilityClass,
)


class TestInMemoryStateStore:
    """Get/set/delete and snapshot semantics"""

    @pytest.mark.asyncio
    async def test_write_is_visible_to_next_read(self):
        store = InMemoryStateStore()

        change = await store.set("theme", "dark", VisibilityClass.EPHEMERAL)

        assert change.op == "set"
        assert change.key == "theme"
        assert change.visibility == VisibilityClass.EPHEMERAL
        assert await store.get("theme", VisibilityClass.EPHEMERAL) == "dark"

    @pytest.mark.asyncio
    async def test_classes_are_separate_namespaces(self):
        store = InMemoryStateStore()

        await store.set("key", 1, VisibilityClass.EPHEMERAL)
        await store.set("key", 2, VisibilityClass.DURABLE_WORKSPACE)

        assert await store.get("key", VisibilityClass.EPHEMERAL) == 1
        assert await store.get("key", VisibilityClass.DURABLE_WORKSPACE) == 2
        assert await store.get("key", VisibilityClass.DURABLE_GLOBAL) is None

    @pytest.mark.asyncio
    async def test_last_write_wins(self):
        store = InMemoryStateStore()

        await store.set("counter", 1, VisibilityClass.EPHEMERAL)
        await store.set("counter", 2, VisibilityClass.EPHEMERAL)

        assert await store.get("counter", VisibilityClass.EPHEMERAL) == 2

    @pytest.mark.asyncio
    async def test_delete_reports_only_real_removals(self):
        store = InMemoryStateStore()
        await store.set("key", "value", VisibilityClass.DURABLE_WORKSPACE)

        change = await store.delete("key", VisibilityClass.DURABLE_WORKSPACE)
        assert change is not None
        assert change.op == "delete"

        assert await store.delete("key", VisibilityClass.DURABLE_WORKSPACE) is None
        assert await store.get("key", VisibilityClass.DURABLE_WORKSPACE) is None

    @pytest.mark.asyncio
    async def test_snapshot_never_contains_secrets_unless_elevated(self):
        store = InMemoryStateStore()
        await store.set("token", "hunter2", VisibilityClass.SECRET)
        await store.set("theme", "dark", VisibilityClass.EPHEMERAL)

        snapshot = await store.snapshot(list(VisibilityClass))
        assert VisibilityClass.SECRET.value not in snapshot
        assert snapshot[VisibilityClass.EPHEMERAL.value] == {"theme": "dark"}

        elevated = await store.snapshot([VisibilityClass.SECRET], elevated=True)
        assert elevated == {"secret": {"token": "hunter2"}}

    @pytest.mark.asyncio
    async def test_snapshot_of_broadcastable_classes(self):
        store = InMemoryStateStore()
        await store.set("a", 1, VisibilityClass.DURABLE_GLOBAL)

        snapshot = await store.snapshot(BROADCASTABLE_CLASSES)

        assert set(snapshot) == {"ephemeral", "durable_workspace", "durable_global"}
        assert snapshot["durable_global"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        store = InMemoryStateStore()
        await store.set("short", "lived", VisibilityClass.EPHEMERAL, ttl=0.05)
        await store.set("long", "lived", VisibilityClass.EPHEMERAL)

        await asyncio.sleep(0.1)

        assert await store.get("short", VisibilityClass.EPHEMERAL) is None
        snapshot = await store.snapshot([VisibilityClass.EPHEMERAL])
        assert snapshot["ephemeral"] == {"long": "lived"}

    @pytest.mark.asyncio
    async def test_default_ephemeral_retention(self):
        store = InMemoryStateStore(ephemeral_ttl=0.05)
        await store.set("scratch", 1, VisibilityClass.EPHEMERAL)
        await store.set("kept", 1, VisibilityClass.DURABLE_WORKSPACE)

        await asyncio.sleep(0.1)

        assert await store.clear_expired() == 1
        stats = await store.get_stats()
        assert stats["ephemeral"] == 0
        assert stats["durable_workspace"] == 1


class TestJsonFileStateStore:
    """Durable classes survive a restart, the others do not"""

    @pytest.mark.asyncio
    async def test_durable_classes_are_reloaded(self, tmp_path):
        store = JsonFileStateStore(str(tmp_path))
        await store.set("layout", {"panes": 2}, VisibilityClass.DURABLE_WORKSPACE)
        await store.set("locale", "en", VisibilityClass.DURABLE_GLOBAL)
        await store.set("cursor", 10, VisibilityClass.EPHEMERAL)
        await store.set("token", "hunter2", VisibilityClass.SECRET)

        reopened = JsonFileStateStore(str(tmp_path))

        assert await reopened.get("layout", VisibilityClass.DURABLE_WORKSPACE) == {"panes": 2}
        assert await reopened.get("locale", VisibilityClass.DURABLE_GLOBAL) == "en"
        assert await reopened.get("cursor", VisibilityClass.EPHEMERAL) is None
        assert await reopened.get("token", VisibilityClass.SECRET) is None

    @pytest.mark.asyncio
    async def test_secrets_never_touch_disk(self, tmp_path):
        store = JsonFileStateStore(str(tmp_path))
        await store.set("token", "hunter2", VisibilityClass.SECRET)
        await store.set("layout", "grid", VisibilityClass.DURABLE_WORKSPACE)

        written = "".join(path.read_text(encoding="utf-8") for path in tmp_path.glob("*.json"))
        assert "hunter2" not in written
        assert json.loads((tmp_path / "workspace.json").read_text(encoding="utf-8"))["layout"]["value"] == "grid"

    @pytest.mark.asyncio
    async def test_global_dir_is_shared(self, tmp_path):
        first = JsonFileStateStore(str(tmp_path / "s1"), global_dir=str(tmp_path))
        await first.set("locale", "fr", VisibilityClass.DURABLE_GLOBAL)
        await first.set("layout", "grid", VisibilityClass.DURABLE_WORKSPACE)

        second = JsonFileStateStore(str(tmp_path / "s2"), global_dir=str(tmp_path))

        assert await second.get("locale", VisibilityClass.DURABLE_GLOBAL) == "fr"
        assert await second.get("layout", VisibilityClass.DURABLE_WORKSPACE) is None

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / "workspace.json").write_text("{not json", encoding="utf-8")

        store = JsonFileStateStore(str(tmp_path))

        assert await store.snapshot([VisibilityClass.DURABLE_WORKSPACE]) == {"durable_workspace": {}}


class TestScopedStateAccessor:
    """Namespacing, class restrictions and change notification"""

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self):
        store = InMemoryStateStore()
        accessor = ScopedStateAccessor(store, "tool:search")

        await accessor.set("query", "cats")

        assert await accessor.get("query") == "cats"
        assert await store.get("tool:search:query", VisibilityClass.EPHEMERAL) == "cats"
        assert await store.get("query", VisibilityClass.EPHEMERAL) is None

    @pytest.mark.asyncio
    async def test_secret_class_is_not_reachable_by_default(self):
        accessor = ScopedStateAccessor(InMemoryStateStore(), "tool:search")

        with pytest.raises(PermissionError):
            await accessor.set("token", "x", VisibilityClass.SECRET)
        with pytest.raises(PermissionError):
            await accessor.get("token", VisibilityClass.DURABLE_GLOBAL)

    @pytest.mark.asyncio
    async def test_mutations_are_reported(self):
        changes = []

        async def on_change(change):
            changes.append(change)

        accessor = ScopedStateAccessor(InMemoryStateStore(), "tool:notes", on_change=on_change)

        await accessor.set("draft", "hello", VisibilityClass.DURABLE_WORKSPACE)
        await accessor.delete("draft", VisibilityClass.DURABLE_WORKSPACE)
        await accessor.delete("missing", VisibilityClass.DURABLE_WORKSPACE)

        assert [(c.op, c.key) for c in changes] == [
            ("set", "tool:notes:draft"),
            ("delete", "tool:notes:draft"),
        ]
