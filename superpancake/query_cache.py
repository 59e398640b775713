"""
Bounded, time-limited cache of DOM lookups.

Maps (session, lookup key) to an opaque node identifier. Entries expire
after a TTL (checked lazily on read), the least recently used entry is
evicted when the cache is full, and callers invalidate entries when the
page changes under them.

Lookups that target volatile parts of a page (form controls, counters,
status messages, live regions) get the short TTL; everything else gets the
longer static TTL.

Usage:
    cache = QueryCache(CacheConfig(capacity=200))
    node_id = await cached_query_selector(session, "#submit", cache=cache)
    cache.on_dom_modification(session)  # after an action that changes the DOM
"""

import re
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import CacheConfig
from .errors import PancakeError, ProtocolError, QueryError, ValidationError
from .logger import PancakeLogger

DYNAMIC_PATTERNS = [
    re.compile(r"\[data-"),
    re.compile(r"\b(input|select|textarea)\b"),
    re.compile(r"\.(error|warning|message)"),
    re.compile(r"\.(loading|spinner)"),
    re.compile(r"\.(count|total|progress)"),
    re.compile(r"#\w*(list|table)"),
    re.compile(r"\.(live|real-time)"),
]


def is_dynamic_key(key: str) -> bool:
    """True when a lookup key targets content that changes often."""
    return any(pattern.search(key) for pattern in DYNAMIC_PATTERNS)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    is_dynamic: bool


def _session_key(session: Any) -> str:
    session_id = getattr(session, "id", None)
    if not session_id or not callable(getattr(session, "send", None)):
        raise ValidationError("Cache key needs a session with an id and a send() method")
    return str(session_id)


def _check_lookup_key(key: Any) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationError(f"Lookup key must be a non-empty string, got {key!r}")
    return key


class QueryCache:
    """
    LRU cache with per-entry TTL, scoped by session.

    Args:
        config: Sizing and TTLs (default CacheConfig())
        clock: Monotonic clock in seconds, replaceable in tests
        logger: Optional logger
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: PancakeLogger | None = None,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self.logger = logger
        self._entries: OrderedDict[tuple[str, str], CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def capacity(self) -> int:
        return self.config.capacity

    def ttl_for(self, entry: CacheEntry) -> float:
        """TTL of an entry in seconds."""
        if self.config.adaptive_ttl and not entry.is_dynamic:
            return self.config.static_ttl_ms / 1000
        return self.config.ttl_ms / 1000

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at >= self.ttl_for(entry)

    def get(self, session: Any, key: str) -> Any | None:
        """Cached value, or None when absent or expired."""
        cache_key = (_session_key(session), _check_lookup_key(key))
        entry = self._entries.get(cache_key)
        if entry is None:
            self.misses += 1
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[cache_key]
            self.expirations += 1
            self.misses += 1
            return None
        self._entries.move_to_end(cache_key)
        self.hits += 1
        return entry.value

    def set(self, session: Any, key: str, value: Any) -> None:
        cache_key = (_session_key(session), _check_lookup_key(key))
        now = self._clock()
        entry = CacheEntry(value=value, stored_at=now, is_dynamic=is_dynamic_key(key))

        if cache_key in self._entries:
            self._entries[cache_key] = entry
            self._entries.move_to_end(cache_key)
            return

        if len(self._entries) > self.capacity * self.config.sweep_threshold:
            self.sweep_expired(now)
        while len(self._entries) >= self.capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            if self.logger:
                self.logger.info(f"🗑️  Evicted cached lookup {evicted_key[1]!r}")
        self._entries[cache_key] = entry

    def sweep_expired(self, now: float | None = None) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [k for k, entry in self._entries.items() if self._is_expired(entry, now)]
        for cache_key in expired:
            del self._entries[cache_key]
        self.expirations += len(expired)
        return len(expired)

    def invalidate(self, session: Any, key: str) -> bool:
        """Remove one entry. Idempotent; returns whether an entry was removed."""
        cache_key = (_session_key(session), _check_lookup_key(key))
        return self._entries.pop(cache_key, None) is not None

    def invalidate_by_pattern(self, session: Any, pattern: str | re.Pattern) -> int:
        session_key = _session_key(session)
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        doomed = [k for k in self._entries if k[0] == session_key and regex.search(k[1])]
        for cache_key in doomed:
            del self._entries[cache_key]
        return len(doomed)

    def invalidate_session(self, session: Any) -> int:
        session_key = _session_key(session)
        doomed = [k for k in self._entries if k[0] == session_key]
        for cache_key in doomed:
            del self._entries[cache_key]
        if doomed and self.logger:
            self.logger.info(f"🗑️  Dropped {len(doomed)} cached lookups for {session_key}")
        return len(doomed)

    def on_dom_modification(self, session: Any) -> int:
        """The page changed; every lookup of this session may be wrong now."""
        return self.invalidate_session(session)

    def invalidate_all(self) -> None:
        """Clear every entry and reset statistics."""
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get_stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        dynamic = sum(1 for entry in self._entries.values() if entry.is_dynamic)
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "dynamic_entries": dynamic,
            "static_entries": len(self._entries) - dynamic,
            "ttl_ms": self.config.ttl_ms,
            "static_ttl_ms": self.config.static_ttl_ms,
        }

    async def validate_cached_node(self, session: Any, node_id: int) -> bool:
        """Ask the page whether a cached node id still resolves."""
        try:
            result = await session.send("DOM.describeNode", {"nodeId": node_id})
        except ProtocolError:
            return False
        return bool(result.get("node"))


async def cached_query_selector(
    session: Any,
    selector: str,
    *,
    use_cache: bool = True,
    cache: QueryCache | None = None,
) -> int | None:
    """
    Resolve a CSS selector to a node id, reusing recent answers.

    Cache hits are revalidated against the live page before being returned.

    Args:
        session: Session to query (its own cache is used unless ``cache`` is given)
        selector: CSS selector
        use_cache: Skip the cache entirely when False

    Returns:
        Node id, or None when nothing matches

    Raises:
        QueryError: The lookup failed
    """
    if cache is None:
        cache = getattr(session, "cache", None)
    if use_cache and cache is not None:
        cached = cache.get(session, selector)
        if cached is not None:
            if await cache.validate_cached_node(session, cached):
                return cached
            cache.invalidate(session, selector)

    try:
        document = await session.send("DOM.getDocument", {"depth": 0})
        root_id = document["root"]["nodeId"]
        result = await session.send(
            "DOM.querySelector", {"nodeId": root_id, "selector": selector}
        )
    except (KeyError, TypeError) as e:
        raise QueryError(selector, f"unexpected DOM.getDocument reply: {e}") from e
    except PancakeError as e:
        raise QueryError(selector, e.message) from e

    node_id = result.get("nodeId") or None
    if node_id is not None and use_cache and cache is not None:
        cache.set(session, selector, node_id)
    return node_id
