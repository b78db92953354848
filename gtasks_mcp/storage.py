"""
Key-value storage for gateway state.

Grants, bridge tokens, sessions and upstream credentials are all kept behind
the same small interface so the backend can be swapped: ``MemoryStore`` for
tests and single-process deployments, ``JsonFileStore`` for credentials that
must survive a restart, and ``PostgresStore`` (see ``token_storage``) when
several gateway processes share state.

Each operation is a single insert, replace, delete or pop. Nothing here
coordinates across keys.
"""

import asyncio
import copy
import hashlib
import json
import logging
import os
import re
import secrets
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Namespaced async key-value store with optional per-key expiry."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any], expires_at: float | None = None) -> None:
        """Insert or replace a value."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    async def pop(self, key: str) -> dict[str, Any] | None:
        """Atomically remove and return a value. Only one concurrent caller wins."""

    @abstractmethod
    async def list_expired(self, now: float | None = None) -> list[str]:
        """Keys whose expiry has passed."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored keys, expired or not."""

    async def purge_expired(self, now: float | None = None) -> int:
        """Delete every expired key and return how many were removed."""
        removed = 0
        for key in await self.list_expired(now):
            if await self.delete(key):
                removed += 1
        if removed:
            logger.info(f"Purged {removed} expired entries from '{self.namespace}'")
        return removed


class MemoryStore(KeyValueStore):
    """Process-local store. Values are copied in and out so callers never share state."""

    def __init__(self, namespace: str):
        super().__init__(namespace)
        self._data: dict[str, tuple[dict[str, Any], float | None]] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry[0])

    async def put(self, key: str, value: dict[str, Any], expires_at: float | None = None) -> None:
        self._data[key] = (copy.deepcopy(value), expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def pop(self, key: str) -> dict[str, Any] | None:
        entry = self._data.pop(key, None)
        return entry[0] if entry is not None else None

    async def list_expired(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        return [
            key
            for key, (_, expires_at) in self._data.items()
            if expires_at is not None and expires_at < now
        ]

    async def count(self) -> int:
        return len(self._data)


def _safe_filename(key: str) -> str:
    """Readable, collision-free file name for an arbitrary key."""
    readable = re.sub(r"[^a-zA-Z0-9]", "_", key)[:64]
    digest = hashlib.sha256(key.encode()).hexdigest()[:12]
    return f"{readable}-{digest}.json"


class JsonFileStore(KeyValueStore):
    """
    One JSON file per key under ``<directory>/<namespace>/``.

    Files are created with mode 0600 since they hold upstream credentials.
    Disk access runs in a worker thread to keep the event loop free.
    """

    def __init__(self, namespace: str, directory: str | os.PathLike[str]):
        super().__init__(namespace)
        self.directory = Path(directory) / namespace
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _path(self, key: str) -> Path:
        return self.directory / _safe_filename(key)

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt store file {path}: {e}")
            return None

    def _write(self, key: str, value: dict[str, Any], expires_at: float | None) -> None:
        path = self._path(key)
        tmp = path.with_suffix(f".{secrets.token_hex(4)}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"key": key, "value": value, "expires_at": expires_at}, f, indent=2)
        os.replace(tmp, path)

    def _pop(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        claimed = path.with_suffix(f".{secrets.token_hex(4)}.claimed")
        try:
            os.replace(path, claimed)
        except FileNotFoundError:
            return None
        record = self._read(claimed)
        claimed.unlink(missing_ok=True)
        return record["value"] if record else None

    def _delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def _list_expired(self, now: float) -> list[str]:
        expired = []
        for path in self.directory.glob("*.json"):
            record = self._read(path)
            if record and record.get("expires_at") is not None and record["expires_at"] < now:
                expired.append(record["key"])
        return expired

    async def get(self, key: str) -> dict[str, Any] | None:
        record = await asyncio.to_thread(self._read, self._path(key))
        return record["value"] if record else None

    async def put(self, key: str, value: dict[str, Any], expires_at: float | None = None) -> None:
        await asyncio.to_thread(self._write, key, value, expires_at)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def pop(self, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._pop, key)

    async def list_expired(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        return await asyncio.to_thread(self._list_expired, now)

    async def count(self) -> int:
        return await asyncio.to_thread(lambda: len(list(self.directory.glob("*.json"))))
