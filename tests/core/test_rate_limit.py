from cycleflow.core import rate_limit
from cycleflow.core.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RedisRateLimitStore,
    get_webhook_rate_limiter,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakePipeline:
    """Sorted-set subset of a redis pipeline, enough for the sliding log."""

    def __init__(self, client):
        self.client = client
        self.ops = []

    def zremrangebyscore(self, key, low, high):
        self.ops.append(("zremrangebyscore", key, low, high))

    def zadd(self, key, mapping):
        self.ops.append(("zadd", key, mapping))

    def zcard(self, key):
        self.ops.append(("zcard", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    def execute(self):
        results = []
        for op in self.ops:
            name, key = op[0], op[1]
            members = self.client.sets.setdefault(key, {})
            if name == "zremrangebyscore":
                stale = [m for m, score in members.items() if op[2] <= score <= op[3]]
                for member in stale:
                    del members[member]
                results.append(len(stale))
            elif name == "zadd":
                members.update(op[2])
                results.append(len(op[2]))
            elif name == "zcard":
                results.append(len(members))
            else:
                self.client.expiries[key] = op[2]
                results.append(True)
        return results


class FakeRedis:
    def __init__(self):
        self.sets = {}
        self.expiries = {}

    def pipeline(self):
        return FakePipeline(self)


def test_allows_up_to_max_requests_then_blocks():
    limiter = RateLimiter(InMemoryRateLimitStore(), max_requests=100, window_seconds=60, clock=FakeClock())

    results = [limiter.check("1.2.3.4") for _ in range(101)]

    assert all(result.allowed for result in results[:100])
    assert not results[100].allowed
    assert results[100].count == 101
    assert results[100].retry_after == 60


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateLimitStore(), max_requests=2, window_seconds=60, clock=clock)

    assert limiter.check("ip").allowed
    assert limiter.check("ip").allowed
    assert not limiter.check("ip").allowed

    clock.now += 61
    assert limiter.check("ip").allowed


def test_keys_are_independent():
    limiter = RateLimiter(InMemoryRateLimitStore(), max_requests=1, window_seconds=60, clock=FakeClock())

    assert limiter.check("a").allowed
    assert not limiter.check("a").allowed
    assert limiter.check("b").allowed


def test_idle_keys_are_evicted():
    store = InMemoryRateLimitStore()
    store.hit("a", 1_000.0, 60)
    store.hit("b", 1_000.0, 60)
    assert len(store) == 2

    store.hit("c", 1_100.0, 60)

    assert len(store) == 1


def test_redis_store_counts_inside_window():
    client = FakeRedis()
    store = RedisRateLimitStore(client)

    assert store.hit("ip", 1_000.0, 60) == 1
    assert store.hit("ip", 1_010.0, 60) == 2
    assert store.hit("ip", 1_060.5, 60) == 2

    key = f"{RedisRateLimitStore.KEY_PREFIX}ip"
    assert len(client.sets[key]) == 2
    assert client.expiries[key] == 60


def test_redis_backed_limiter():
    limiter = RateLimiter(RedisRateLimitStore(FakeRedis()), max_requests=3, window_seconds=60, clock=FakeClock())

    results = [limiter.check("ip").allowed for _ in range(4)]

    assert results == [True, True, True, False]


def test_webhook_rate_limiter_is_shared(monkeypatch):
    monkeypatch.setattr(rate_limit.settings, "rate_limit_backend", "memory")

    limiter = get_webhook_rate_limiter()

    assert limiter is get_webhook_rate_limiter()
    assert isinstance(limiter.store, InMemoryRateLimitStore)
    assert limiter.max_requests == rate_limit.settings.webhook_rate_limit_max_requests
