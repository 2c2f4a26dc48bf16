"""Expiring key-value cache tables.

Backends persist conversations and credentials through the CacheTable
protocol. Two implementations ship with the package: an in-process table and
a table stored as a JSON file, which is what the CLI uses so conversations
survive between invocations.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .config import CacheConfig

logger = logging.getLogger(__name__)

# Default directory for file-backed cache tables
CACHE_DIR = Path.home() / ".cache" / "chatrelay"


@runtime_checkable
class CacheTable(Protocol):
    """A named table of JSON-compatible values with optional TTL."""

    async def get(self, key: str) -> Any | None:
        """Get a value, or None if missing or expired."""
        ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value.

        Args:
            key: Entry key.
            value: JSON-compatible value.
            ttl: Seconds until the entry expires, None to keep it forever.
        """
        ...

    async def delete(self, key: str) -> None:
        """Remove an entry if present."""
        ...

    async def clear(self) -> None:
        """Remove every entry of the table."""
        ...


class MemoryCache:
    """In-process cache table. Expiry uses the monotonic clock."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._entries: dict[str, tuple[Any, float | None]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FileCache:
    """Cache table persisted as a single JSON file.

    Entries are stored as ``{"value": ..., "expires_at": epoch | null}``.
    The file is rewritten on every change.
    """

    def __init__(self, name: str, directory: Path | None = None):
        self.name = name
        self.directory = Path(directory) if directory is not None else CACHE_DIR
        self.path = self.directory / f"{name.replace('/', '-')}.json"

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
                return data.get("entries", {})
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load cache table {self.name}: {e}")
            return {}

    def _save(self, entries: dict[str, dict]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump({"entries": entries}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save cache table {self.name}: {e}")
            raise

    async def get(self, key: str) -> Any | None:
        entries = self._load()
        entry = entries.get(key)
        if entry is None:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and time.time() >= expires_at:
            del entries[key]
            self._save(entries)
            return None
        return entry.get("value")

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        entries = self._load()
        entries[key] = {
            "value": value,
            "expires_at": time.time() + ttl if ttl is not None else None,
        }
        self._save(entries)

    async def delete(self, key: str) -> None:
        entries = self._load()
        if entries.pop(key, None) is not None:
            self._save(entries)

    async def clear(self) -> None:
        self._save({})


def open_cache(config: CacheConfig | None, name: str) -> CacheTable:
    """Open the cache table ``name`` using the configured storage.

    Args:
        config: Cache configuration. None means in-memory.
        name: Table name (e.g. 'chatgpt/conversations').

    Returns:
        A cache table.

    Raises:
        ValueError: If the configured cache backend is unknown.
    """
    if config is None or config.backend == "memory":
        return MemoryCache(name)
    if config.backend == "file":
        directory = Path(config.directory).expanduser() if config.directory else None
        return FileCache(name, directory)
    raise ValueError(f"Unknown cache backend: {config.backend}")
