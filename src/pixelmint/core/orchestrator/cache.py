"""
Result cache management for the generation orchestrator.

This module provides the ResultCache class for caching generated payloads
with disk persistence, age/size-bounded eviction and an in-memory fallback.
"""

import asyncio
import hashlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..config import Settings
from ..events import EventBus, EventType

# saved_cost sums the provider cost of every entry served from the cache.
EMPTY_STATS = {"hits": 0, "misses": 0, "stores": 0, "saved_cost": 0.0}


@dataclass
class CacheEntry:
    """Metadata stored alongside a cached payload."""

    key: str
    size: int
    timestamp: float
    last_accessed: float
    category: str = "unknown"
    provider: str = "unknown"
    cost: float = 0.0
    complexity: Optional[int] = None
    color_seed: Optional[int] = None
    index: Optional[int] = None


class ResultCache:
    """
    Content-addressed payload cache keyed by generation parameters.

    Entries are evicted on write: first anything older than ``max_age``, then
    least recently accessed entries until the new payload fits in
    ``max_size``. If the cache directory is unusable the cache keeps the same
    interface over an in-memory map limited to ``fallback_max_entries``.
    """

    def __init__(self, settings: Settings, events: Optional[EventBus] = None):
        """
        Initialize the ResultCache.

        Args:
            settings: Settings providing data_dir and cache limits.
            events: Optional event bus for hit/miss/stored events.
        """
        self._lock = threading.RLock()
        self._events = events
        self._dir = Path(settings.data_dir) / "cache"
        self._payload_dir = self._dir / "payloads"
        self.max_size = settings.cache_max_size
        self.max_age = settings.cache_max_age
        self.fallback_max_entries = settings.cache_fallback_max_entries

        self._entries: Dict[str, CacheEntry] = {}
        self._memory: Dict[str, bytes] = {}
        self._stats = dict(EMPTY_STATS)
        self._persistent = False
        self._dirty = False

    @staticmethod
    def generate_cache_key(category: str, complexity: Any, color_seed: Any, index: Any) -> str:
        """Deterministic key over the parameters that determine a result."""
        key_data = {
            "category": category,
            "complexity": complexity,
            "color_seed": color_seed,
            "index": index,
        }
        raw = json.dumps(key_data, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def index_path(self) -> Path:
        return self._dir / "index.json"

    @property
    def meta_path(self) -> Path:
        return self._dir / "meta.json"

    @property
    def is_persistent(self) -> bool:
        return self._persistent

    @property
    def total_size(self) -> int:
        with self._lock:
            return sum(entry.size for entry in self._entries.values())

    def initialize(self) -> bool:
        """
        Load the cache index from disk.

        Returns:
            True when disk storage is in use, False for the in-memory fallback.
        """
        with self._lock:
            try:
                self._payload_dir.mkdir(parents=True, exist_ok=True)
                self._entries = {}
                if self.index_path.exists():
                    with self.index_path.open("r", encoding="utf-8") as f:
                        raw = json.load(f)
                    for key, data in raw.items():
                        self._entries[key] = CacheEntry(**data)
                if self.meta_path.exists():
                    with self.meta_path.open("r", encoding="utf-8") as f:
                        meta = json.load(f)
                    for name in self._stats:
                        self._stats[name] = type(EMPTY_STATS[name])(meta.get(name, 0))
                self._persistent = True
                logger.info(f"Result cache loaded from disk ({len(self._entries)} entries)")
            except (OSError, ValueError, TypeError) as e:
                self._persistent = False
                self._entries = {}
                logger.warning(f"Cache storage unavailable, using in-memory cache: {e}")
            return self._persistent

    def _handle_cache_operation(self, operation: str, operation_func: Callable) -> Optional[Any]:
        """Run a storage operation, logging instead of raising on I/O failure."""
        try:
            return operation_func()
        except OSError as e:
            logger.warning(f"Failed to {operation} result cache: {e}")
            return None

    def _save_index(self) -> None:
        if not self._persistent:
            self._dirty = False
            return
        data = {key: asdict(entry) for key, entry in self._entries.items()}
        meta = dict(self._stats, total_size=self.total_size, updated=time.time())

        def write():
            with self.index_path.open("w", encoding="utf-8") as f:
                json.dump(data, f)
            with self.meta_path.open("w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
            return True

        if self._handle_cache_operation("persist", write) is not None:
            self._dirty = False

    def _read_payload(self, key: str) -> Optional[bytes]:
        if not self._persistent:
            return self._memory.get(key)
        path = self._payload_dir / key
        return self._handle_cache_operation("read", path.read_bytes)

    def _write_payload(self, key: str, payload: bytes) -> bool:
        if not self._persistent:
            self._memory[key] = payload
            return True
        path = self._payload_dir / key
        return self._handle_cache_operation("write", lambda: path.write_bytes(payload)) is not None

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if not self._persistent:
            self._memory.pop(key, None)
        else:
            path = self._payload_dir / key
            self._handle_cache_operation("remove", lambda: path.unlink(missing_ok=True))
        return entry is not None

    def _is_expired(self, entry: CacheEntry, now: float, max_age: Optional[float] = None) -> bool:
        return now - entry.timestamp > (self.max_age if max_age is None else max_age)

    def _get_sync(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            now = time.time()
            payload = None
            if entry is not None and self._is_expired(entry, now):
                self._remove(key)
                entry = None
            if entry is not None:
                payload = self._read_payload(key)
                if payload is None:
                    self._remove(key)

            # Persisted on the next write, cleanup or flush.
            self._dirty = self._persistent
            if payload is None:
                self._stats["misses"] += 1
                return None

            entry.last_accessed = now
            self._stats["hits"] += 1
            self._stats["saved_cost"] += entry.cost
            return payload

    async def get(self, key: str) -> Optional[bytes]:
        """Return the cached payload for ``key``, or None on a miss."""
        payload = await asyncio.to_thread(self._get_sync, key)
        if payload is None:
            logger.debug(f"Cache miss: {key[:12]}")
            self._emit(EventType.CACHE_MISS, key=key)
        else:
            logger.debug(f"Cache hit: {key[:12]}")
            self._emit(EventType.CACHE_HIT, key=key, size=len(payload))
        return payload

    def _evict_for(self, incoming: int, now: float) -> int:
        removed = 0
        for key in [k for k, e in self._entries.items() if self._is_expired(e, now)]:
            self._remove(key)
            removed += 1

        total = self.total_size
        for entry in sorted(self._entries.values(), key=lambda e: e.last_accessed):
            if total + incoming <= self.max_size:
                break
            total -= entry.size
            self._remove(entry.key)
            removed += 1

        if not self._persistent and len(self._entries) >= self.fallback_max_entries:
            drop = max(1, len(self._entries) // 4)
            for entry in sorted(self._entries.values(), key=lambda e: e.last_accessed)[:drop]:
                self._remove(entry.key)
                removed += 1

        if removed:
            logger.debug(f"Evicted {removed} cache entries")
        return removed

    def _set_sync(self, key: str, payload: bytes, metadata: Dict[str, Any]) -> bool:
        size = len(payload)
        if size > self.max_size:
            logger.warning(f"Payload of {size} bytes exceeds cache capacity, not cached")
            return False

        with self._lock:
            now = time.time()
            self._remove(key)
            self._evict_for(size, now)
            if not self._write_payload(key, payload):
                return False
            self._entries[key] = CacheEntry(
                key=key,
                size=size,
                timestamp=now,
                last_accessed=now,
                category=metadata.get("category", "unknown"),
                provider=metadata.get("provider", "unknown"),
                cost=float(metadata.get("cost", 0.0)),
                complexity=metadata.get("complexity"),
                color_seed=metadata.get("color_seed"),
                index=metadata.get("index"),
            )
            self._stats["stores"] += 1
            self._save_index()
            return True

    async def set(self, key: str, payload: bytes, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Store a payload, evicting old or least recently used entries first.

        Args:
            key: Cache key from generate_cache_key().
            payload: Raw result bytes.
            metadata: Optional category/provider/cost/generation parameters.

        Returns:
            True if the payload was stored.
        """
        metadata = metadata or {}
        stored = await asyncio.to_thread(self._set_sync, key, bytes(payload), metadata)
        if stored:
            self._emit(
                EventType.CACHE_STORED,
                key=key,
                size=len(payload),
                category=metadata.get("category"),
                provider=metadata.get("provider"),
            )
        return stored

    async def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry, time.time())

    async def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._remove(key)
            if removed:
                self._save_index()
            return removed

    async def clear(self) -> None:
        """Remove every entry and reset counters."""
        with self._lock:
            for key in list(self._entries):
                self._remove(key)
            self._memory.clear()
            self._stats = dict(EMPTY_STATS)
            self._save_index()
        logger.info("Result cache cleared")

    async def cleanup(self, max_age: Optional[float] = None, max_size: Optional[int] = None) -> int:
        """
        Drop entries older than ``max_age`` then trim LRU entries down to ``max_size``.

        Returns:
            Number of entries removed.
        """
        max_size = self.max_size if max_size is None else max_size
        removed = 0
        with self._lock:
            now = time.time()
            for key in [k for k, e in self._entries.items() if self._is_expired(e, now, max_age)]:
                self._remove(key)
                removed += 1
            total = self.total_size
            for entry in sorted(self._entries.values(), key=lambda e: e.last_accessed):
                if total <= max_size:
                    break
                total -= entry.size
                self._remove(entry.key)
                removed += 1
            if removed or self._dirty:
                self._save_index()
        logger.debug(f"Cache cleanup removed {removed} entries")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "entries": len(self._entries),
                "total_size": self.total_size,
                "max_size": self.max_size,
                "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
                "persistent": self._persistent,
            }

    @property
    def is_dirty(self) -> bool:
        """True when lookups changed access times or counters not yet on disk."""
        return self._dirty

    async def flush(self) -> None:
        """Write the index and counters to disk."""
        with self._lock:
            self._save_index()

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **data)


__all__ = [
    "CacheEntry",
    "ResultCache",
]
