import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from config import (
    VIZ_PAYLOAD_CACHE_MAX_ENTRIES,
    VIZ_PAYLOAD_CACHE_TTL_SECONDS,
    VIZ_RENDER_CACHE_MAX_ENTRIES,
    VIZ_RENDER_CACHE_TTL_SECONDS,
)
from observability import get_logger, log_event
from visualize.fingerprint import payload_key
from visualize.models import IdentifierKind, PayloadCacheEntry, RenderCacheEntry

_LOGGER = get_logger("molviz.visualize.store")

T = TypeVar("T")


class BoundedCache(Generic[T]):
    """Insertion-ordered map with LRU eviction and optional expiry.

    ``max_entries=0`` disables the size bound and ``ttl_seconds=0`` disables
    expiry. Entries are replaced wholesale; callers never mutate stored values.
    Only touched from the event loop thread, so no locking.
    """

    def __init__(self, name: str, max_entries: int = 0, ttl_seconds: float = 0.0) -> None:
        self.name = name
        self.max_entries = max(0, int(max_entries))
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._items: "OrderedDict[str, tuple[float, T]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return self.get(key, touch=False) is not None

    def _expired(self, stored_at: float, now: float) -> bool:
        return bool(self.ttl_seconds) and now - stored_at > self.ttl_seconds

    def get(self, key: str, touch: bool = True) -> Optional[T]:
        item = self._items.get(key)
        if item is None:
            if touch:
                self._misses += 1
            return None
        stored_at, value = item
        if self._expired(stored_at, time.time()):
            self._items.pop(key, None)
            self._evictions += 1
            log_event(_LOGGER, logging.DEBUG, "cache.expired", cache=self.name, key=key)
            if touch:
                self._misses += 1
            return None
        if touch:
            self._hits += 1
            self._items.move_to_end(key)
        return value

    def put(self, key: str, value: T) -> None:
        self._items.pop(key, None)
        self._items[key] = (time.time(), value)
        while self.max_entries and len(self._items) > self.max_entries:
            oldest, _ = self._items.popitem(last=False)
            self._evictions += 1
            log_event(_LOGGER, logging.DEBUG, "cache.evicted_lru", cache=self.name, key=oldest)

    def evict(self, key: str) -> bool:
        removed = self._items.pop(key, None) is not None
        if removed:
            log_event(_LOGGER, logging.INFO, "cache.invalidated", cache=self.name, key=key)
        return removed

    def clear(self) -> int:
        removed = len(self._items)
        self._items.clear()
        if removed:
            log_event(_LOGGER, logging.INFO, "cache.cleared", cache=self.name, removed=removed)
        return removed

    def keys(self) -> list[str]:
        return list(self._items.keys())

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._items),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }


class PayloadCache(BoundedCache[PayloadCacheEntry]):
    """Style-independent structure payloads keyed by ``kind:identifier``."""

    def __init__(
        self,
        max_entries: int = VIZ_PAYLOAD_CACHE_MAX_ENTRIES,
        ttl_seconds: float = VIZ_PAYLOAD_CACHE_TTL_SECONDS,
    ) -> None:
        super().__init__("payload", max_entries=max_entries, ttl_seconds=ttl_seconds)

    def load_payload(self, kind: IdentifierKind, identifier: str) -> Optional[PayloadCacheEntry]:
        return self.get(payload_key(kind, identifier))

    def save_payload(self, kind: IdentifierKind, identifier: str, entry: PayloadCacheEntry) -> None:
        self.put(payload_key(kind, identifier), entry)

    def invalidate(self, kind: IdentifierKind, identifier: str) -> bool:
        return self.evict(payload_key(kind, identifier))


class RenderCache(BoundedCache[RenderCacheEntry]):
    """Global success cache: fingerprint -> completed render metadata."""

    def __init__(
        self,
        max_entries: int = VIZ_RENDER_CACHE_MAX_ENTRIES,
        ttl_seconds: float = VIZ_RENDER_CACHE_TTL_SECONDS,
    ) -> None:
        super().__init__("render", max_entries=max_entries, ttl_seconds=ttl_seconds)

    def has_render(self, fingerprint: str) -> bool:
        return fingerprint in self

    def load_render(self, fingerprint: str) -> Optional[RenderCacheEntry]:
        return self.get(fingerprint)

    def save_render(self, fingerprint: str, entry: RenderCacheEntry) -> None:
        self.put(fingerprint, entry)

    def invalidate(self, fingerprint: str) -> bool:
        return self.evict(fingerprint)

    def invalidate_identifier(
        self,
        kind: IdentifierKind,
        identifier: str,
        normalize: Optional[Callable[[IdentifierKind, str], str]] = None,
    ) -> int:
        """Drop every style variant rendered from ``kind`` and ``identifier``.

        ``normalize`` maps an identifier to its canonical form so that
        ``" 1crn "`` and ``"1CRN"`` match the same entries.
        """
        canonical = normalize or _strip_identifier
        target = canonical(kind, identifier)
        removed = 0
        for fingerprint in self.keys():
            entry = self.get(fingerprint, touch=False)
            if entry is None:
                continue
            source = entry.source_request
            if source.kind == kind and canonical(source.kind, source.identifier) == target:
                removed += int(self.evict(fingerprint))
        return removed


def _strip_identifier(kind: IdentifierKind, identifier: str) -> str:
    return str(identifier or "").strip()


_PAYLOAD_CACHE: Optional[PayloadCache] = None
_RENDER_CACHE: Optional[RenderCache] = None


def get_payload_cache() -> PayloadCache:
    global _PAYLOAD_CACHE
    if _PAYLOAD_CACHE is None:
        _PAYLOAD_CACHE = PayloadCache()
    return _PAYLOAD_CACHE


def get_render_cache() -> RenderCache:
    global _RENDER_CACHE
    if _RENDER_CACHE is None:
        _RENDER_CACHE = RenderCache()
    return _RENDER_CACHE


def reset_caches() -> None:
    global _PAYLOAD_CACHE, _RENDER_CACHE
    _PAYLOAD_CACHE = None
    _RENDER_CACHE = None
