"""In-memory TTL + LRU cache of tool selections keyed by normalized query."""
import copy
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv

from .utils import is_cacheable_query, normalize_query

load_dotenv()

logger = logging.getLogger(__name__)

TOOL_CACHE_TTL_SECONDS = float(os.getenv("TOOL_CACHE_TTL_SECONDS", "3600"))  # 1 hour
TOOL_CACHE_MAX_ENTRIES = int(os.getenv("TOOL_CACHE_MAX_ENTRIES", "100"))


@dataclass
class CacheEntry:
    tool_name: str
    confidence: float
    arguments: Any
    created_at: float
    last_used: float
    use_count: int = 0


class SelectionCache:
    """Maps normalized queries to a previously selected (tool, confidence, arguments).

    Expiry is checked lazily on ``get`` against ``last_used``. When full, adding
    a new key evicts the entry that was used least recently. Every operation
    runs under a single lock.
    """

    def __init__(
        self,
        ttl_seconds: float = TOOL_CACHE_TTL_SECONDS,
        max_entries: int = TOOL_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def should_cache(self, query: str) -> bool:
        return is_cacheable_query(query)

    def get(self, query: str) -> Optional[Tuple[str, float, Any]]:
        key = normalize_query(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if now - entry.last_used > self.ttl_seconds:
                del self._entries[key]
                logger.info(f"[CACHE EXPIRED] '{key[:80]}' -> {entry.tool_name}")
                return None
            entry.last_used = now
            entry.use_count += 1
            logger.info(f"[CACHE HIT] '{key[:80]}' -> {entry.tool_name} (uses={entry.use_count})")
            return entry.tool_name, entry.confidence, copy.deepcopy(entry.arguments)

    def add(self, query: str, tool_name: str, confidence: float, arguments: Any) -> None:
        key = normalize_query(query)
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].last_used)
                evicted = self._entries.pop(oldest)
                logger.info(f"[CACHE EVICT] '{oldest[:80]}' -> {evicted.tool_name}")
            self._entries[key] = CacheEntry(
                tool_name=tool_name,
                confidence=confidence,
                arguments=copy.deepcopy(arguments),
                created_at=now,
                last_used=now,
            )
            logger.info(f"[CACHE STORE] '{key[:80]}' -> {tool_name} (confidence={confidence:.2f})")

    def remove_tool_entries(self, tool_name: str) -> int:
        """Drop every entry that points at ``tool_name``; return how many were dropped."""
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.tool_name == tool_name]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.info(f"[CACHE PURGE] Removed {len(stale)} entries for tool '{tool_name}'")
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "total_uses": sum(e.use_count for e in self._entries.values()),
            }
