import threading

import pytest

from territory_market.cache import CacheCoherence, MemoryCacheStore, RedisCacheStore, create_cache_store


class ExplodingStore:
    def get(self, key):
        raise ConnectionError('cache down')

    def set(self, key, value, ttl):
        raise ConnectionError('cache down')

    def delete(self, *keys):
        raise ConnectionError('cache down')

    def delete_pattern(self, pattern):
        raise ConnectionError('cache down')

    def generation(self, gen_key):
        raise ConnectionError('cache down')

    def bump(self, *gen_keys):
        raise ConnectionError('cache down')

    def set_if_generation(self, key, value, ttl, gen_key, generation):
        raise ConnectionError('cache down')


@pytest.fixture()
def cache():
    return CacheCoherence(MemoryCacheStore(), entity_ttl=60, auction_ttl=30, list_ttl=30)


def test_read_through_populates_once(cache):
    calls = []

    def load():
        calls.append(1)
        return {'id': 'T1', 'ownerId': None}

    assert cache.get_territory('T1', load) == {'id': 'T1', 'ownerId': None}
    assert cache.get_territory('T1', load) == {'id': 'T1', 'ownerId': None}
    assert len(calls) == 1


def test_skip_cache_reads_store_without_repopulating(cache):
    cache.get_territory('T1', lambda: {'ownerId': 'old'})
    assert cache.get_territory('T1', lambda: {'ownerId': 'new'}, skip_cache=True) == {'ownerId': 'new'}
    assert cache.get_territory('T1', lambda: {'ownerId': 'newer'}) == {'ownerId': 'old'}


def test_invalidate_drops_entities_and_lists(cache):
    cache.get_territory('T1', lambda: {'ownerId': 'old'})
    cache.get_auction(7, lambda: {'status': 'active'})
    cache.get_list('territories', lambda: ['T1'], sovereignty=None)
    cache.get_list('auctions', lambda: [7], status='active')

    cache.invalidate(auction_ids=[7], territory_ids=['T1'])

    assert cache.store.get('territory:T1') is None
    assert cache.store.get('auction:7') is None
    assert cache.store.get(cache.list_key('territories', sovereignty=None)) is None
    assert cache.store.get(cache.list_key('auctions', status='active')) is None


def test_invalidate_auction_leaves_other_territories(cache):
    cache.get_territory('T2', lambda: {'ownerId': 'x'})
    cache.invalidate_auction(7, 'T1')
    assert cache.store.get('territory:T2') == {'ownerId': 'x'}


def test_load_racing_an_invalidation_is_not_cached(cache):
    def load_then_writer_commits():
        # The store answered with the old owner, then a transfer committed
        cache.invalidate_territory('T1')
        return {'ownerId': 'old'}

    assert cache.get_territory('T1', load_then_writer_commits) == {'ownerId': 'old'}
    assert cache.store.get('territory:T1') is None
    assert cache.get_territory('T1', lambda: {'ownerId': 'new'}) == {'ownerId': 'new'}
    assert cache.get_territory('T1', lambda: {'ownerId': 'newer'}) == {'ownerId': 'new'}


def test_list_load_racing_an_invalidation_is_not_cached(cache):
    def load_then_writer_commits():
        cache.invalidate_auction(7, 'T1')
        return [{'id': 7, 'status': 'active'}]

    cache.get_list('auctions', load_then_writer_commits, status='active')
    assert cache.store.get(cache.list_key('auctions', status='active')) is None
    assert cache.get_list('auctions', lambda: [], status='active') == []


def test_concurrent_reader_and_writer_leave_fresh_value(cache):
    loaded = threading.Event()
    committed = threading.Event()
    results = []

    def slow_load():
        loaded.set()
        committed.wait(timeout=5)
        return {'ownerId': 'old'}

    reader = threading.Thread(target=lambda: results.append(cache.get_territory('T1', slow_load)))
    reader.start()
    assert loaded.wait(timeout=5)
    cache.invalidate_territory('T1')
    committed.set()
    reader.join(timeout=5)

    assert results == [{'ownerId': 'old'}]
    assert cache.get_territory('T1', lambda: {'ownerId': 'new'}) == {'ownerId': 'new'}


def test_memory_store_set_if_generation():
    store = MemoryCacheStore()
    assert store.generation('gen:territory:T1') == 0
    assert store.set_if_generation('territory:T1', {'ownerId': 'a'}, 60, 'gen:territory:T1', 0) is True
    store.bump('gen:territory:T1')
    assert store.generation('gen:territory:T1') == 1
    assert store.set_if_generation('territory:T1', {'ownerId': 'b'}, 60, 'gen:territory:T1', 0) is False
    assert store.get('territory:T1') == {'ownerId': 'a'}


def test_cache_failures_fall_back_to_store():
    cache = CacheCoherence(ExplodingStore())
    assert cache.get_territory('T1', lambda: {'ownerId': 'u1'}) == {'ownerId': 'u1'}
    # Must not raise
    cache.invalidate(auction_ids=[1], territory_ids=['T1'])


def test_memory_store_expires_entries(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr('territory_market.cache.time.monotonic', lambda: now[0])
    store = MemoryCacheStore()
    store.set('territory:T1', {'ownerId': 'u1'}, ttl=10)
    assert store.get('territory:T1') == {'ownerId': 'u1'}
    now[0] += 11
    assert store.get('territory:T1') is None


def test_create_cache_store_by_url():
    assert isinstance(create_cache_store('memory://'), MemoryCacheStore)
    assert isinstance(create_cache_store('redis://localhost:6379/0'), RedisCacheStore)
    with pytest.raises(ValueError):
        create_cache_store('memcached://localhost')


def test_territory_endpoint_skip_cache(client, make_territory):
    from territory_market import db
    from territory_market.models import Territory

    make_territory('T1')
    assert client.get('/api/territories/T1').get_json()['ownerName'] is None

    # Write behind the cache's back; only a bypassing read sees it
    db.session.get(Territory, 'T1').owner_name = 'Sneaky'
    db.session.commit()
    assert client.get('/api/territories/T1').get_json()['ownerName'] is None
    assert client.get('/api/territories/T1?skipCache=true').get_json()['ownerName'] == 'Sneaky'


def test_territory_endpoint_not_found(client):
    res = client.get('/api/territories/nowhere')
    assert res.status_code == 404
    assert res.get_json()['error'] == 'TerritoryNotFound'
