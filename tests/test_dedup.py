"""Dedup stores: process-local TTL set and Redis-backed set."""

from paysync.services.webhooks.dedup import RedisDedupCache, TTLDedupCache


class InMemoryRedis:
    """Implements only the two commands RedisDedupCache issues."""

    def __init__(self) -> None:
        self.values = {}
        self.ttls = {}

    def exists(self, key):
        return int(key in self.values)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True


def test_ttl_cache_forgets_after_ttl(clock):
    cache = TTLDedupCache(ttl=60, clock=clock)
    cache.remember("evt:1")

    clock.advance(59)
    assert cache.seen("evt:1")

    clock.advance(1)
    assert not cache.seen("evt:1")
    assert len(cache) == 0


def test_ttl_cache_refresh_extends_entry(clock):
    cache = TTLDedupCache(ttl=60, clock=clock)
    cache.remember("evt:1")
    clock.advance(30)
    cache.remember("evt:2")
    cache.remember("evt:1")

    clock.advance(45)

    assert cache.seen("evt:1")
    assert cache.seen("evt:2")


def test_ttl_cache_is_bounded(clock):
    cache = TTLDedupCache(ttl=60, maxsize=2, clock=clock)
    for key in ("evt:1", "evt:2", "evt:3"):
        cache.remember(key)

    assert len(cache) == 2
    assert not cache.seen("evt:1")
    assert cache.seen("evt:3")


def test_redis_cache_sets_expiry():
    client = InMemoryRedis()
    cache = RedisDedupCache(client, ttl=86400)

    assert not cache.seen("evt:9")
    cache.remember("evt:9")

    assert cache.seen("evt:9")
    assert client.ttls["webhook:dedup:evt:9"] == 86400
