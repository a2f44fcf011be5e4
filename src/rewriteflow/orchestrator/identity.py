"""
Run identity persistence and recovery.

A run identity is the engine-issued id of the job set for one
(source, version) pair. It is looked up in three tiers:

1. The in-memory value cached on the run context
2. A durable key-value store that survives restarts
3. The engine's ``active_run_lookup`` action

Store failures never break a run: they are logged and treated as a miss.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from rewriteflow.config.models import IdentityBackend, IdentityConfig
from rewriteflow.engine import AuthenticationError, EngineClient, EngineError

logger = logging.getLogger(__name__)

KEY_PREFIX = "rewriteflow:run"


def identity_key(source_id: str, source_version_id: str) -> str:
    """Store key for the run of a source version."""
    return f"{KEY_PREFIX}:{source_id}:{source_version_id}"


class IdentityTier(str, Enum):
    """Where a run identity was found."""

    MEMORY = "memory"
    STORE = "store"
    REMOTE = "remote"


class KeyValueStore(ABC):
    """Durable side-channel for run identities."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value stored under key, or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""


class MemoryStore(KeyValueStore):
    """Process-local store, mainly for tests and one-shot runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Single JSON file holding every key.

    Writes go to a temporary file that is renamed over the target, so a
    crash never leaves a truncated file. Concurrent writers from different
    processes are last-writer-wins.

    Args:
        path: Location of the JSON file (created on first write)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        content = self._path.read_text(encoding="utf-8")
        if not content.strip():
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"Identity store {self._path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._read().get(key)
        return str(value) if value else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


def create_store(config: IdentityConfig) -> KeyValueStore:
    """Build the identity store selected by configuration."""
    if config.backend == IdentityBackend.MEMORY:
        return MemoryStore()
    return JsonFileStore(config.path)


class RunIdentityManager:
    """Resolves, persists and clears run identities.

    Args:
        engine: Engine client used for the remote lookup tier
        store: Durable key-value store
    """

    def __init__(self, engine: EngineClient, store: KeyValueStore) -> None:
        self._engine = engine
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def resolve(
        self,
        source_id: str,
        source_version_id: str,
        cached: str | None = None,
    ) -> tuple[str | None, IdentityTier | None]:
        """Find the run id for a source version.

        The first tier that yields an id wins; the id is written back to
        the store so the next lookup is cheaper.

        Args:
            source_id: Source identifier
            source_version_id: Source version identifier
            cached: Value already held in memory, if any

        Returns:
            Tuple of (run_id, tier), or (None, None) when every tier misses

        Raises:
            AuthenticationError: If the remote lookup has no valid session
        """
        key = identity_key(source_id, source_version_id)

        if cached:
            self._safe_set(key, cached)
            return cached, IdentityTier.MEMORY

        stored = self._safe_get(key)
        if stored:
            logger.debug(f"Run identity for {key} found in store")
            return stored, IdentityTier.STORE

        try:
            remote = await self._engine.active_run_lookup(source_id, source_version_id)
        except AuthenticationError:
            raise
        except EngineError as e:
            logger.warning(f"Remote run lookup failed for {key}: {e}")
            return None, None

        if remote:
            logger.info(f"Recovered run identity {remote} from engine")
            self._safe_set(key, remote)
            return remote, IdentityTier.REMOTE

        return None, None

    def persist(self, source_id: str, source_version_id: str, run_id: str) -> None:
        """Persist a run id. Failures are logged, never raised."""
        self._safe_set(identity_key(source_id, source_version_id), run_id)

    def clear(self, source_id: str, source_version_id: str) -> None:
        """Forget the run id of a source version. Failures are logged."""
        key = identity_key(source_id, source_version_id)
        try:
            self._store.delete(key)
        except Exception as e:
            logger.warning(f"Identity store delete failed for {key}: {e}")

    def _safe_get(self, key: str) -> str | None:
        try:
            return self._store.get(key)
        except Exception as e:
            logger.warning(f"Identity store read failed for {key}: {e}")
            return None

    def _safe_set(self, key: str, value: str) -> None:
        try:
            self._store.set(key, value)
        except Exception as e:
            logger.warning(f"Identity store write failed for {key}: {e}")
