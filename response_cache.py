"""
response_cache.py
-----------------
MediFlow Clinical API Client - In-process Response Cache
---------------------------------------------------------
Time-to-live cache for read results, keyed by logical operation, entity
type and a canonical serialisation of the request parameters.

Keys
----
``CacheKey(operation, entity, params)`` is a tuple; its string form is the
familiar ``list_Patient_{"limit":10,"page":1}`` / ``get_Patient_p1``.
Parameters are serialised with sorted keys, so two option dicts that differ
only in insertion order share one entry.  Only ``CacheKey`` instances are
accepted as keys; build them with ``make_key()``.

Storage
-------
Entries live in a ``cachetools.LRUCache`` bounded by ``maxsize``.  Expiry is
not delegated to ``TTLCache`` / ``TLRUCache``: the former has a single TTL
for the whole cache and the latter purges expired items on every insert,
while here each entry carries its own TTL and is only dropped on lookup.

Expiry and invalidation
-----------------------
  - TTL is per entry.  An entry is valid while ``now - timestamp < ttl``;
    an expired entry is removed the next time it is looked up.  Nothing is
    swept in the background.
  - Reads pass the ``generation(entity)`` token taken before fetching to
    ``set``; any invalidation in between makes the fill a no-op.
  - ``invalidate(pattern)`` removes every key whose string form contains
    *pattern* (e.g. ``"list_Patient"`` clears all cached Patient lists).
  - ``invalidate_entity(entity, operation=..., params=...)`` matches tuple
    segments exactly, so invalidating ``User`` leaves ``UserSession``
    entries alone.  The façade uses this form after writes.
  - ``clear()`` removes everything.

The cache lives for the lifetime of the process; concurrent ``set`` calls
for one key are last-write-wins.

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from cachetools import LRUCache

from api_models import CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000

# Returned by ``get`` when nothing valid is cached; cached values may be None.
MISSING: Any = object()


class CacheKey(NamedTuple):
    operation: str
    entity: str
    params: str = ""

    def __str__(self) -> str:
        base = f"{self.operation}_{self.entity}"
        return f"{base}_{self.params}" if self.params else base


def canonical_params(params: Any) -> str:
    """Stable text form of *params*: sorted-key compact JSON for mappings."""
    if params is None:
        return ""
    if isinstance(params, (dict, list, tuple)):
        return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return str(params)


def make_key(operation: str, entity: str, params: Any = None) -> CacheKey:
    """
    Build a cache key.

    Example::

        make_key("list", "Patient", {"page": 1, "limit": 10})
        # -> list_Patient_{"limit":10,"page":1}
        make_key("get", "Patient", "p1")
        # -> get_Patient_p1
    """
    return CacheKey(operation, entity, canonical_params(params))


class ResponseCache:
    """
    TTL cache of read results over a bounded ``cachetools.LRUCache``.

    Args:
        clock:   Zero-argument callable returning seconds; ``time.monotonic``
                 by default.  Tests inject a controllable clock.
        maxsize: Entry bound; once reached, the least recently used entry
                 makes room for a new one.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._clock = clock
        self._entries: LRUCache = LRUCache(maxsize=maxsize)
        self._epoch = 0
        self._entity_generations: Dict[str, int] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    # ── Fill tokens ──────────────────────────────────────────────────────────

    def generation(self, entity: str) -> Tuple[int, int]:
        """
        Token that changes whenever entries of *entity* may have been dropped.

        Readers take a token before fetching and hand it back to ``set``; a
        fill whose token is out of date is discarded, so a read that
        overlapped a write never stores its pre-write snapshot.
        """
        return (self._epoch, self._entity_generations.get(entity, 0))

    def _bump_entity(self, entity: str) -> None:
        self._entity_generations[entity] = self._entity_generations.get(entity, 0) + 1

    # ── Lookup / store ───────────────────────────────────────────────────────

    def get(self, key: CacheKey, default: Any = None) -> Any:
        """Return the cached value, or *default* when absent or expired."""
        entry = self._entries.get(_require_key(key))
        if entry is None:
            return default
        if entry.is_valid(self._now_ms()):
            return entry.data
        del self._entries[key]
        logger.debug("ResponseCache: evicted expired entry %s.", key)
        return default

    def set(
        self,
        key: CacheKey,
        value: Any,
        ttl_ms: float,
        *,
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        """
        Store *value* under *key* for *ttl_ms* milliseconds.

        Returns:
            False when *generation* is given and no longer current, in which
            case nothing is stored.
        """
        key = _require_key(key)
        if generation is not None and generation != self.generation(key.entity):
            logger.debug("ResponseCache: discarded stale fill for %s.", key)
            return False
        self._entries[key] = CacheEntry(data=value, timestamp=self._now_ms(), ttl_ms=ttl_ms)
        return True

    # ── Invalidation ─────────────────────────────────────────────────────────

    def invalidate(self, pattern: str) -> int:
        """Remove every entry whose key text contains *pattern*; return the count."""
        self._epoch += 1
        doomed = [key for key in self._entries if pattern in str(key)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("ResponseCache: invalidated %d entries matching %r.", len(doomed), pattern)
        return len(doomed)

    def invalidate_entity(
        self,
        entity: str,
        *,
        operation: Optional[str] = None,
        params: Any = None,
    ) -> int:
        """
        Remove entries for exactly *entity*.

        *operation* and *params* narrow the match when given; ``params`` is
        compared in canonical form.  In-flight fills for *entity* are
        discarded even when nothing was cached yet.
        """
        self._bump_entity(entity)
        wanted_params = None if params is None else canonical_params(params)
        doomed = [
            key
            for key in self._entries
            if key.entity == entity
            and (operation is None or key.operation == operation)
            and (wanted_params is None or key.params == wanted_params)
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(
                "ResponseCache: invalidated %d entries for %s (operation=%s).",
                len(doomed), entity, operation or "*",
            )
        return len(doomed)

    def clear(self) -> None:
        self._epoch += 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, CacheKey):
            return False
        return self.get(key, MISSING) is not MISSING


def _require_key(key: Any) -> CacheKey:
    if not isinstance(key, CacheKey):
        raise TypeError(
            f"Cache keys must be CacheKey instances (use make_key()), got {type(key).__name__}."
        )
    return key
