import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from redis.exceptions import ConnectionError as RedisConnectionError

from factories import llm_call, make_event
from observa.services.cache_service import CacheService
from observa.services.trace_query_service import TraceQueryService, event_set_fingerprint
from test_cache_service import FakeRedis


class BrokenRedis(FakeRedis):
    def get(self, key):
        raise RedisConnectionError("cache down")

    def setex(self, key, ttl, value):
        raise RedisConnectionError("cache down")


def seed(store, *events):
    for event in events:
        store.append(event)


def test_unknown_trace_returns_none(event_store, app_settings):
    assert TraceQueryService(event_store, settings=app_settings).get_trace("missing") is None


def test_trace_is_cached_until_new_events_arrive(event_store, app_settings):
    cache = CacheService(redis_client=FakeRedis())
    service = TraceQueryService(event_store, cache, app_settings)
    seed(event_store, make_event("trace_start", "root", t=0), llm_call("llm", t=1, parent="root", output="hi"))

    first = service.get_trace("trace-1")
    second = service.get_trace("trace-1")

    assert first == second
    assert cache.metrics["trace"] == {"hit": 1, "miss": 1}

    seed(event_store, llm_call("llm-2", t=2, parent="root", output="bye"))
    third = service.get_trace("trace-1")

    assert third.span_count == 3
    assert third.output == "bye"
    assert cache.metrics["trace"]["miss"] == 2


def test_cache_outage_falls_back_to_reconstruction(event_store, app_settings):
    service = TraceQueryService(event_store, CacheService(redis_client=BrokenRedis()), app_settings)
    seed(event_store, make_event("trace_start", "root", t=0))

    trace = service.get_trace("trace-1")

    assert trace.attempt_count == 1


def test_fingerprint_tracks_appends(event_store):
    seed(event_store, llm_call("a", t=1))
    before = event_set_fingerprint(event_store.query("trace-1"))
    seed(event_store, llm_call("b", t=2))

    assert before == "1:1"
    assert event_set_fingerprint(event_store.query("trace-1")) == "2:2"
    assert event_set_fingerprint([]) == "0:0"
