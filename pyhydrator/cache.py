"""
Cache store for hydrated telemetry totals.

Entries are keyed by ``domain:start:end:granularity`` and hold the normalised
device totals for that period.  An entry is only ever created from a non-empty
result: an empty list means "no data yet" and storing it would hide the next
good answer until the TTL runs out.

    store = CacheStore(ttl_minutes=5, max_size=50)
    store.write(cache_key("energy", period), items)
    entry = store.read(cache_key("energy", period))   # None once expired

Entries can be mirrored to a KeyValueStore (namespaced by customer id and
domain) so a restarted process starts warm; ``sweep()`` removes expired
entries from both copies and is run periodically by the orchestrator.
"""
import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional

from pydantic import ValidationError

from pyhydrator.const import STORAGE_PREFIX
from pyhydrator.models import CacheEntry, DeviceTotal, Period
from pyhydrator.storage import KeyValueStore

log = logging.getLogger(__name__)


def cache_key(domain: str, period: Period) -> str:
    return f"{domain}:{period.key}"


def key_domain(key: str) -> str:
    return key.split(":", 1)[0]


class CacheStore:

    def __init__(self, ttl_minutes: float = 5, max_size: int = 50,
                 store: Optional[KeyValueStore] = None, namespace: str = "default",
                 persist_max_bytes: int = 5 * 1024 * 1024,
                 clock: Callable[[], float] = time.time):
        self.ttl_minutes = ttl_minutes
        self.max_size = max_size
        self.store = store
        self.namespace = namespace or "default"
        self.persist_max_bytes = persist_max_bytes
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def _storage_key(self, key: str) -> str:
        return f"{STORAGE_PREFIX}:{self.namespace}:{key}"

    def read(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key if it exists, has items and is within TTL.

        Anything else is deleted (memory and mirror) and None is returned.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self.clock()):
            log.debug(f"Cache entry {key} expired or empty - removing")
            self._remove(key)
            return None
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the entry without validating or evicting it."""
        return self._entries.get(key)

    def write(self, key: str, items: Optional[List[DeviceTotal]]) -> Optional[CacheEntry]:
        if not items:
            log.warning(f"Refusing to cache empty result for {key}")
            return None
        now = self.clock()
        entry = CacheEntry(
            items=list(items),
            cached_at=now,
            ttl_minutes=self.ttl_minutes,
            expires_at=now + self.ttl_minutes * 60,
        )
        self._entries.pop(key, None)
        self._entries[key] = entry
        while len(self._entries) > self.max_size:
            oldest, _ = self._entries.popitem(last=False)
            self._unpersist(oldest)
            log.debug(f"Evicted cache key: {oldest}")
        self._persist(key, entry)
        return entry

    def invalidate(self, domain: str = "*") -> List[str]:
        """Drop every entry (domain="*") or those of one domain."""
        if domain == "*":
            removed = list(self._entries.keys())
            self._entries.clear()
            if self.store is not None:
                self.store.clear_prefix(f"{STORAGE_PREFIX}:{self.namespace}:")
        else:
            removed = [k for k in self._entries if key_domain(k) == domain]
            for key in removed:
                del self._entries[key]
            if self.store is not None:
                self.store.clear_prefix(f"{STORAGE_PREFIX}:{self.namespace}:{domain}:")
        log.debug(f"Cache invalidated: {domain} ({len(removed)} entries)")
        return removed

    def sweep(self) -> int:
        """Remove expired entries from memory and from the persisted mirror."""
        now = self.clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for key in expired:
            self._remove(key)
        if self.store is not None:
            prefix = f"{STORAGE_PREFIX}:{self.namespace}:"
            for skey in list(self.store.keys()):
                if not skey.startswith(prefix) or skey[len(prefix):] in self._entries:
                    continue
                entry = self._load(skey)
                if entry is None or not entry.is_fresh(now):
                    self.store.delete(skey)
                    expired.append(skey)
        if expired:
            log.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def load_persisted(self) -> int:
        """Warm the in-memory store from the mirror, skipping stale entries."""
        if self.store is None:
            return 0
        prefix = f"{STORAGE_PREFIX}:{self.namespace}:"
        now = self.clock()
        loaded = []
        for skey in list(self.store.keys()):
            if not skey.startswith(prefix):
                continue
            entry = self._load(skey)
            if entry is None or not entry.is_fresh(now):
                self.store.delete(skey)
                continue
            loaded.append((skey[len(prefix):], entry))
        for key, entry in sorted(loaded, key=lambda pair: pair[1].cached_at):
            self._entries[key] = entry
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        log.info(f"Loaded {len(loaded)} cache entries from persisted store")
        return len(loaded)

    def switch_namespace(self, namespace: str) -> int:
        """Drop the in-memory entries of the previous namespace and warm from the new one."""
        namespace = namespace or "default"
        if namespace == self.namespace:
            return 0
        log.info(f"Cache namespace {self.namespace} -> {namespace}")
        self._entries.clear()
        self.namespace = namespace
        return self.load_persisted()

    def _remove(self, key: str):
        self._entries.pop(key, None)
        self._unpersist(key)

    def _load(self, skey: str) -> Optional[CacheEntry]:
        raw = self.store.get(skey)
        if not raw:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            log.debug(f"Discarding unreadable persisted entry {skey}: {exc}")
            return None

    def _persist(self, key: str, entry: CacheEntry):
        if self.store is None:
            return
        payload = entry.model_dump_json()
        if len(payload.encode("utf-8")) > self.persist_max_bytes:
            log.warning(f"Payload too large to persist for {key} ({len(payload)} bytes) - skipped")
            return
        try:
            self.store.set(self._storage_key(key), payload)
        except OSError as exc:
            log.warning(f"Persist failed for {key}: {exc}")

    def _unpersist(self, key: str):
        if self.store is not None:
            self.store.delete(self._storage_key(key))
