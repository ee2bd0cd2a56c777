"""In-memory TTL cache with LRU eviction and a byte-size ceiling.

Used for the retrieval results (4 min) and the personal patient context
(2 min).  Entries are never invalidated by writes elsewhere in the system;
they simply age out.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via ``json.dumps`` byte length of the value.
• **Insertion timestamp** per entry, compared against ``ttl_seconds`` on
  every read.  Expired entries are dropped lazily when touched.
• **threading.Lock** so the cache can be shared by the event loop and the
  worker threads that run blocking store calls.
• ``None`` is a legitimate cached value (e.g. "this phone has no patient
  context"), so ``get`` takes an explicit *default* for misses.

Usage
─────
>>> cache = TTLCache(ttl_seconds=120)
>>> cache.put("pc:+23276000000", None)
>>> cache.get("pc:+23276000000", default=MISSING) is None
True
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Default ceiling: 20 MB
DEFAULT_MAX_BYTES = 20 * 1024 * 1024

MISSING: Any = object()


class TTLCache:
    """Time-boxed cache bounded by total estimated byte size."""

    def __init__(
        self,
        ttl_seconds: float,
        max_bytes: int = DEFAULT_MAX_BYTES,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_bytes = max_bytes
        self._clock = clock
        self._current_bytes = 0
        # key → (value, estimated_size_bytes, inserted_at)
        self._store: OrderedDict[str, tuple[Any, int, float]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Size estimation ──────────────────────────────────────────────

    @staticmethod
    def _estimate_bytes(value: Any) -> int:
        """Return the estimated in-memory size of *value* in bytes.

        Pydantic models are measured through their JSON dump; anything
        else through ``json.dumps`` with a ``str()`` fallback.  This is a
        lower-bound estimate but good enough for cache sizing.
        """
        try:
            return len(json.dumps(value, default=_json_default).encode("utf-8"))
        except (TypeError, ValueError, OverflowError):
            return len(str(value).encode("utf-8"))

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value (promoting it to MRU) or *default*."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            value, size, inserted_at = entry
            if self._clock() - inserted_at >= self._ttl:
                del self._store[key]
                self._current_bytes -= size
                logger.debug("Cache: expired %s", key)
                return default
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*, stamping it with the current time."""
        size = self._estimate_bytes(value)

        if size > self._max_bytes:
            logger.debug(
                "Cache: skipping key %s (size %d > max %d)",
                key, size, self._max_bytes,
            )
            return

        with self._lock:
            if key in self._store:
                _, old_size, _ = self._store.pop(key)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, (_, evicted_size, _) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Cache: evicted %s (%d bytes)", evicted_key, evicted_size)

            self._store[key] = (value, size, self._clock())
            self._current_bytes += size

    # ── Introspection ────────────────────────────────────────────────

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def current_bytes(self) -> int:
        """Total estimated bytes currently stored."""
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        """Number of entries currently stored (expired ones included)."""
        return len(self._store)


def _json_default(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)
