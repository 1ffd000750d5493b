"""Tests for the research result cache."""

from mentor.research.cache import ResearchCache, normalize_query
from mentor.research.models import ResearchResult


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def result(text: str) -> ResearchResult:
    return ResearchResult(text=text)


def test_capacity_evicts_first_inserted():
    cache = ResearchCache(ttl_seconds=300, capacity=100)
    keys = [cache.make_key(f"query {i}", "system") for i in range(101)]
    for i, key in enumerate(keys):
        cache.set(key, result(str(i)))

    assert len(cache) == 100
    assert keys[0] not in cache
    assert all(key in cache for key in keys[1:])


def test_reinsert_keeps_original_position():
    cache = ResearchCache(capacity=3)
    a, b, c, d = (cache.make_key(q, "s") for q in "abcd")
    cache.set(a, result("a1"))
    cache.set(b, result("b"))
    cache.set(c, result("c"))
    cache.set(a, result("a2"))  # refresh value, not position

    assert cache.get(a).text == "a2"

    cache.set(d, result("d"))
    assert a not in cache
    assert b in cache and c in cache and d in cache


def test_ttl_expiry():
    clock = FakeClock()
    cache = ResearchCache(ttl_seconds=300, clock=clock)
    key = cache.make_key("q", "s")
    cache.set(key, result("fresh"))

    clock.now += 299
    assert cache.get(key).text == "fresh"

    clock.now += 1
    assert cache.get(key) is None


def test_key_includes_system_prompt_and_normalizes_query():
    cache = ResearchCache()
    cache.set(cache.make_key("  EV   battery\nrecycling ", "sys-a"), result("a"))

    assert cache.get(cache.make_key("EV battery recycling", "sys-a")).text == "a"
    assert cache.get(cache.make_key("EV battery recycling", "sys-b")) is None


def test_normalize_query():
    assert normalize_query("  a \t b\n") == "a b"
    assert normalize_query("") == ""
