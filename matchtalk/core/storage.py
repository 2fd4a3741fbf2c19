"""
Durable key-value storage.

The client persists the auth token, consent flag, telemetry queue and
navigation path through a ``KeyValueStore``. ``FileStore`` keeps all
keys in one JSON file guarded by a file lock and written atomically.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

from filelock import FileLock

from matchtalk.core.exceptions import StorageError

logger = logging.getLogger(__name__)

# Storage keys
AUTH_TOKEN_KEY = "auth_token"
ANALYTICS_QUEUE_KEY = "analytics_queue"
ANALYTICS_CONSENT_KEY = "analytics_consent"
NAVIGATION_PATH_KEY = "analytics_navigation_path"


@runtime_checkable
class KeyValueStore(Protocol):
    """Async string key-value storage."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryStore:
    """In-process store; used by tests and when no storage path is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class FileStore:
    """
    JSON-file backed store.
    - file lock for concurrent access
    - atomic write for integrity
    - blocking I/O runs in a worker thread
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = FileLock(f"{self._path}.lock")
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        if not self._path.exists() or self._path.stat().st_size == 0:
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[FileStore] Load failed, starting empty: %s", exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("[FileStore] Unexpected root type %s, starting empty", type(data).__name__)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _atomic_write(self, data: Dict[str, str]) -> None:
        """Atomic write with temp replace."""
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self._path)
        except OSError as exc:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Write to {self._path} failed", cause=exc) from exc

    def _get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._atomic_write(data)

    def _remove_sync(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            del data[key]
            self._atomic_write(data)

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)


class TokenStore:
    """Auth token accessor over a ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore, key: str = AUTH_TOKEN_KEY):
        self._store = store
        self._key = key

    async def get_token(self) -> Optional[str]:
        return await self._store.get(self._key) or None

    async def set_token(self, token: str) -> None:
        await self._store.set(self._key, token)

    async def clear_token(self) -> None:
        await self._store.remove(self._key)
