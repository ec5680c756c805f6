"""Read caches and the invalidation contract that keeps them honest.

The transactional store is the only source of truth. Per-entity keys
(``territory:<id>``, ``auction:<id>``) are deleted synchronously after every
committed write that touches the row, so their stale window is bounded by
invalidation latency. List views (``territories:*``, ``auctions:*``) are also
dropped on writes but otherwise only live for a short TTL.

Every invalidation also bumps a generation counter (``gen:<key>`` for an
entity, ``gen:<kind>`` for a list family). A read-through load captures the
generation before it queries the store and only populates the cache if the
counter is unchanged, so a load that raced a commit cannot park a stale value
for a whole TTL.

Cache failures never propagate: they are logged and the caller falls back to
the store.
"""

import fnmatch
import json
import logging
import threading
import time
from typing import Any, Callable, Iterable, Optional

import redis
from cachetools import TLRUCache
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

TERRITORY_LIST_PATTERN = 'territories:*'
AUCTION_LIST_PATTERN = 'auctions:*'


class MemoryCacheStore:
    """In-process TTL store for development and tests."""

    def __init__(self, max_size: int = 10000):
        # Each entry carries its own TTL: (payload, ttl_seconds)
        self._data = TLRUCache(maxsize=max_size, ttu=lambda _key, entry, now: now + entry[1], timer=time.monotonic)
        self._lock = threading.Lock()
        self._generations = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
        return json.loads(entry[0]) if entry is not None else None

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (json.dumps(value), ttl)

    def generation(self, gen_key: str) -> int:
        with self._lock:
            return self._generations.get(gen_key, 0)

    def bump(self, *gen_keys: str) -> None:
        with self._lock:
            for gen_key in gen_keys:
                self._generations[gen_key] = self._generations.get(gen_key, 0) + 1

    def set_if_generation(self, key: str, value: Any, ttl: int, gen_key: str, generation: int) -> bool:
        with self._lock:
            if self._generations.get(gen_key, 0) != generation:
                return False
            self._data[key] = (json.dumps(value), ttl)
            return True

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in list(self._data.keys()) if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                self._data.pop(key, None)
        return len(matched)


class RedisCacheStore:
    """Redis-backed store; values are JSON so both backends behave the same."""

    SCAN_BATCH = 100

    def __init__(self, client: 'redis.Redis'):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_sec: float = 1.0) -> 'RedisCacheStore':
        client = redis.Redis.from_url(url, socket_timeout=timeout_sec, socket_connect_timeout=timeout_sec)
        return cls(client)

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._client.set(key, json.dumps(value), ex=ttl)

    def generation(self, gen_key: str) -> int:
        return int(self._client.get(gen_key) or 0)

    def bump(self, *gen_keys: str) -> None:
        if not gen_keys:
            return
        pipe = self._client.pipeline()
        for gen_key in gen_keys:
            pipe.incr(gen_key)
        pipe.execute()

    def set_if_generation(self, key: str, value: Any, ttl: int, gen_key: str, generation: int) -> bool:
        payload = json.dumps(value)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(gen_key)
                if int(pipe.get(gen_key) or 0) != generation:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, payload, ex=ttl)
                pipe.execute()
                return True
            except WatchError:
                # Bumped between the check and EXEC
                return False

    def delete(self, *keys: str) -> None:
        if keys:
            self._client.delete(*keys)

    def delete_pattern(self, pattern: str) -> int:
        # SCAN rather than KEYS so large keyspaces do not block the server
        batch, removed = [], 0
        for key in self._client.scan_iter(match=pattern, count=self.SCAN_BATCH):
            batch.append(key)
            if len(batch) >= self.SCAN_BATCH:
                removed += self._client.delete(*batch)
                batch = []
        if batch:
            removed += self._client.delete(*batch)
        return removed


def create_cache_store(url: str, timeout_sec: float = 1.0):
    if not url or url.startswith('memory://'):
        return MemoryCacheStore()
    if url.startswith(('redis://', 'rediss://', 'unix://')):
        return RedisCacheStore.from_url(url, timeout_sec=timeout_sec)
    raise ValueError(f'Unsupported CACHE_URL scheme: {url}')


class CacheCoherence:
    """Cache-aside reads plus synchronous post-commit invalidation."""

    def __init__(self, store, entity_ttl: int = 3600, auction_ttl: int = 30, list_ttl: int = 300):
        self.store = store
        self.entity_ttl = entity_ttl
        self.auction_ttl = auction_ttl
        self.list_ttl = list_ttl

    @staticmethod
    def territory_key(territory_id) -> str:
        return f'territory:{territory_id}'

    @staticmethod
    def auction_key(auction_id) -> str:
        return f'auction:{auction_id}'

    @staticmethod
    def list_key(kind: str, **params) -> str:
        parts = ':'.join(f'{k}={params[k] if params[k] is not None else "all"}' for k in sorted(params))
        return f'{kind}:list:{parts}' if parts else f'{kind}:list'

    @staticmethod
    def generation_key(name: str) -> str:
        return f'gen:{name}'

    # -- reads --

    def read_through(self, key: str, loader: Callable[[], Any], ttl: int, skip_cache: bool = False,
                     gen_key: Optional[str] = None):
        # A bypassing read must not repopulate the key with what it just read
        if skip_cache:
            return loader()
        cached = self._safe('get', key, lambda: self.store.get(key))
        if cached is not None:
            return cached
        gen_key = gen_key or self.generation_key(key)
        generation = self._safe('generation', gen_key, lambda: self.store.generation(gen_key))
        value = loader()
        if value is not None and generation is not None:
            stored = self._safe(
                'set', key, lambda: self.store.set_if_generation(key, value, ttl, gen_key, generation)
            )
            if stored is False:
                logger.info(f"[cache-populate-skipped] key={key} generation={generation}")
        return value

    def get_territory(self, territory_id, loader, skip_cache=False):
        return self.read_through(self.territory_key(territory_id), loader, self.entity_ttl, skip_cache)

    def get_auction(self, auction_id, loader, skip_cache=False):
        return self.read_through(self.auction_key(auction_id), loader, self.auction_ttl, skip_cache)

    def get_list(self, kind: str, loader, **params):
        return self.read_through(
            self.list_key(kind, **params), loader, self.list_ttl, gen_key=self.generation_key(kind)
        )

    # -- invalidation --

    def invalidate(self, auction_ids: Iterable = (), territory_ids: Iterable = ()) -> None:
        auction_ids = {a for a in auction_ids if a is not None}
        territory_ids = {t for t in territory_ids if t is not None}
        keys = [self.auction_key(a) for a in sorted(auction_ids, key=str)]
        keys += [self.territory_key(t) for t in sorted(territory_ids, key=str)]
        gen_keys = [self.generation_key(k) for k in keys]
        if auction_ids:
            gen_keys.append(self.generation_key('auctions'))
        if territory_ids:
            gen_keys.append(self.generation_key('territories'))
        # Bump before deleting so an in-flight load cannot repopulate afterwards
        if gen_keys:
            self._safe('bump', ','.join(gen_keys), lambda: self.store.bump(*gen_keys))
        if keys:
            self._safe('delete', ','.join(keys), lambda: self.store.delete(*keys))
        if auction_ids:
            self._safe('delete_pattern', AUCTION_LIST_PATTERN, lambda: self.store.delete_pattern(AUCTION_LIST_PATTERN))
        if territory_ids:
            self._safe('delete_pattern', TERRITORY_LIST_PATTERN, lambda: self.store.delete_pattern(TERRITORY_LIST_PATTERN))

    def invalidate_territory(self, territory_id) -> None:
        self.invalidate(territory_ids=[territory_id])

    def invalidate_auction(self, auction_id, territory_id=None) -> None:
        self.invalidate(auction_ids=[auction_id], territory_ids=[territory_id])

    def _safe(self, op: str, key: str, fn: Callable[[], Any]):
        try:
            return fn()
        except Exception as exc:
            logger.warning(f"[cache-{op}-failed] key={key} error={exc!r}")
            return None
