"""Tiered key/value state with explicit visibility classes.

The store knows nothing about tasks. Every access names its visibility class,
and every successful mutation returns a ``StateChange`` so the session
controller can broadcast after it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Iterable, Callable, Awaitable, List
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
import asyncio
import json
import os

from pydantic import BaseModel, Field
import structlog

from taskrelay.infrastructure.observability.logging import task_logger

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VisibilityClass(str, Enum):
    """Durability and exposure tier of a state entry"""
    EPHEMERAL = "ephemeral"
    DURABLE_WORKSPACE = "durable_workspace"
    DURABLE_GLOBAL = "durable_global"
    SECRET = "secret"


BROADCASTABLE_CLASSES = (
    VisibilityClass.EPHEMERAL,
    VisibilityClass.DURABLE_WORKSPACE,
    VisibilityClass.DURABLE_GLOBAL,
)

DURABLE_CLASSES = (
    VisibilityClass.DURABLE_WORKSPACE,
    VisibilityClass.DURABLE_GLOBAL,
)


class StateEntry(BaseModel):
    """A single stored value"""
    key: str
    value: Any = None
    visibility: VisibilityClass
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


class StateChange(BaseModel):
    """Notification returned by every successful mutation"""
    op: str = Field(description="set or delete")
    key: str
    visibility: VisibilityClass
    changed_at: datetime = Field(default_factory=_utcnow)


StateChangeCallback = Callable[[StateChange], Awaitable[None]]


class StateStore(ABC):
    """Interface consumed by the controller and tools.

    Writes must be visible to subsequent reads from the same process
    immediately. ``snapshot`` never returns secret entries unless the caller
    asks with ``elevated=True``.
    """

    @abstractmethod
    async def get(self, key: str, visibility: VisibilityClass) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        visibility: VisibilityClass,
        ttl: Optional[float] = None
    ) -> StateChange:
        pass

    @abstractmethod
    async def delete(self, key: str, visibility: VisibilityClass) -> Optional[StateChange]:
        pass

    @abstractmethod
    async def snapshot(
        self,
        visibilities: Iterable[VisibilityClass],
        elevated: bool = False
    ) -> Dict[str, Dict[str, Any]]:
        pass


class InMemoryStateStore(StateStore):
    """In-memory tiered store with optional TTL retention.

    Last write wins per key; a single lock serializes writes.
    """

    def __init__(self, ephemeral_ttl: float = 0.0, session_id: Optional[str] = None):
        self.entries: Dict[VisibilityClass, Dict[str, StateEntry]] = {
            visibility: {} for visibility in VisibilityClass
        }
        self.ephemeral_ttl = ephemeral_ttl
        self.session_id = session_id
        self._lock = asyncio.Lock()

    async def get(self, key: str, visibility: VisibilityClass) -> Optional[Any]:
        """Get a value, or None if absent or expired"""

        visibility = VisibilityClass(visibility)
        async with self._lock:
            entry = self.entries[visibility].get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self.entries[visibility][key]
                return None
            return entry.value

    async def get_entry(self, key: str, visibility: VisibilityClass) -> Optional[StateEntry]:
        """Get the full entry including timestamps"""

        visibility = VisibilityClass(visibility)
        async with self._lock:
            entry = self.entries[visibility].get(key)
            if entry is None or entry.is_expired():
                return None
            return entry.model_copy()

    async def set(
        self,
        key: str,
        value: Any,
        visibility: VisibilityClass,
        ttl: Optional[float] = None
    ) -> StateChange:
        """Set a value. ``ttl`` overrides the class default retention."""

        visibility = VisibilityClass(visibility)
        if ttl is None and visibility == VisibilityClass.EPHEMERAL and self.ephemeral_ttl:
            ttl = self.ephemeral_ttl

        now = _utcnow()
        entry = StateEntry(
            key=key,
            value=value,
            visibility=visibility,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl else None
        )

        async with self._lock:
            self.entries[visibility][key] = entry
            await self._persist(visibility)

        task_logger.log_state_update(self.session_id, visibility.value, "set", key)
        return StateChange(op="set", key=key, visibility=visibility, changed_at=now)

    async def delete(self, key: str, visibility: VisibilityClass) -> Optional[StateChange]:
        """Delete a key. Returns None when nothing was stored."""

        visibility = VisibilityClass(visibility)
        async with self._lock:
            if key not in self.entries[visibility]:
                return None
            del self.entries[visibility][key]
            await self._persist(visibility)

        task_logger.log_state_update(self.session_id, visibility.value, "delete", key)
        return StateChange(op="delete", key=key, visibility=visibility)

    async def snapshot(
        self,
        visibilities: Iterable[VisibilityClass],
        elevated: bool = False
    ) -> Dict[str, Dict[str, Any]]:
        """Return all live entries in the requested classes, keyed by class"""

        requested = [VisibilityClass(v) for v in visibilities]
        now = _utcnow()

        result: Dict[str, Dict[str, Any]] = {}
        async with self._lock:
            for visibility in requested:
                if visibility == VisibilityClass.SECRET and not elevated:
                    continue
                result[visibility.value] = {
                    key: entry.value
                    for key, entry in self.entries[visibility].items()
                    if not entry.is_expired(now)
                }
        return result

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = _utcnow()
            removed = 0
            for visibility, bucket in self.entries.items():
                expired_keys = [key for key, entry in bucket.items() if entry.is_expired(now)]
                for key in expired_keys:
                    del bucket[key]
                if expired_keys:
                    removed += len(expired_keys)
                    await self._persist(visibility)
            return removed

    async def get_stats(self) -> Dict[str, int]:
        """Entry counts per class"""

        async with self._lock:
            return {visibility.value: len(bucket) for visibility, bucket in self.entries.items()}

    async def _persist(self, visibility: VisibilityClass) -> None:
        """Hook for durable subclasses. Called with the lock held."""
        return None


class JsonFileStateStore(InMemoryStateStore):
    """Store that persists the durable classes as JSON files.

    ``durable_workspace`` lives in ``<state_dir>/workspace.json`` and
    ``durable_global`` in ``<state_dir>/global.json``. Ephemeral and secret
    entries never touch disk.
    """

    FILE_NAMES = {
        VisibilityClass.DURABLE_WORKSPACE: "workspace.json",
        VisibilityClass.DURABLE_GLOBAL: "global.json",
    }

    def __init__(
        self,
        state_dir: str,
        ephemeral_ttl: float = 0.0,
        session_id: Optional[str] = None,
        global_dir: Optional[str] = None
    ):
        super().__init__(ephemeral_ttl=ephemeral_ttl, session_id=session_id)
        self.paths: Dict[VisibilityClass, Path] = {
            VisibilityClass.DURABLE_WORKSPACE: Path(state_dir) / self.FILE_NAMES[VisibilityClass.DURABLE_WORKSPACE],
            VisibilityClass.DURABLE_GLOBAL: Path(global_dir or state_dir) / self.FILE_NAMES[VisibilityClass.DURABLE_GLOBAL],
        }
        for visibility, path in self.paths.items():
            self.entries[visibility] = self._load(path, visibility)

    def _load(self, path: Path, visibility: VisibilityClass) -> Dict[str, StateEntry]:
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to load state file", path=str(path), error=str(e))
            return {}

        entries = {}
        for key, item in raw.items():
            entries[key] = StateEntry(
                key=key,
                value=item.get("value"),
                visibility=visibility,
                updated_at=item.get("updated_at") or _utcnow(),
                expires_at=item.get("expires_at")
            )
        return entries

    async def _persist(self, visibility: VisibilityClass) -> None:
        path = self.paths.get(visibility)
        if path is None:
            return
        data = {
            key: entry.model_dump(mode="json", include={"value", "updated_at", "expires_at"})
            for key, entry in self.entries[visibility].items()
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)


class ScopedStateAccessor:
    """State access handed to tool handlers.

    Keys are namespaced per tool and only the allowed classes are reachable.
    Every mutation is reported through ``on_change``.
    """

    DEFAULT_CLASSES = (VisibilityClass.EPHEMERAL, VisibilityClass.DURABLE_WORKSPACE)

    def __init__(
        self,
        store: StateStore,
        namespace: str,
        allowed: Optional[Iterable[VisibilityClass]] = None,
        on_change: Optional[StateChangeCallback] = None
    ):
        self._store = store
        self.namespace = namespace
        self.allowed: List[VisibilityClass] = [
            VisibilityClass(v) for v in (allowed if allowed is not None else self.DEFAULT_CLASSES)
        ]
        self._on_change = on_change

    def scoped_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _check(self, visibility: VisibilityClass) -> VisibilityClass:
        visibility = VisibilityClass(visibility)
        if visibility not in self.allowed:
            raise PermissionError(
                f"Visibility class '{visibility.value}' is not available to {self.namespace}"
            )
        return visibility

    async def get(self, key: str, visibility: VisibilityClass = VisibilityClass.EPHEMERAL) -> Optional[Any]:
        visibility = self._check(visibility)
        return await self._store.get(self.scoped_key(key), visibility)

    async def set(
        self,
        key: str,
        value: Any,
        visibility: VisibilityClass = VisibilityClass.EPHEMERAL
    ) -> StateChange:
        visibility = self._check(visibility)
        change = await self._store.set(self.scoped_key(key), value, visibility)
        if self._on_change is not None:
            await self._on_change(change)
        return change

    async def delete(
        self,
        key: str,
        visibility: VisibilityClass = VisibilityClass.EPHEMERAL
    ) -> Optional[StateChange]:
        visibility = self._check(visibility)
        change = await self._store.delete(self.scoped_key(key), visibility)
        if change is not None and self._on_change is not None:
            await self._on_change(change)
        return change
