import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from factories import llm_call, make_event, signal_carrier
from observa.core.config import Settings
from observa.core.errors import EventStoreUnavailable, QuarantineError
from observa.repositories.event_store import (
    InMemoryEventStore,
    RedisEventStore,
    build_event_store,
    trace_events_key,
)


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.counters = {}
        self.ttls = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def hsetnx(self, key, field, value):
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = value
        return 1

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def ping(self):
        return True


class DownRedis(FakeRedis):
    def incr(self, key):
        raise RedisConnectionError("connection refused")

    def hgetall(self, key):
        raise RedisConnectionError("connection refused")

    def ping(self):
        raise RedisConnectionError("connection refused")


class RejectingRedis(FakeRedis):
    def hsetnx(self, key, field, value):
        raise ResponseError("OOM command not allowed")


@pytest.fixture(params=["redis", "memory"])
def store(request):
    if request.param == "redis":
        return RedisEventStore(redis_client=FakeRedis(), retention_seconds=3600)
    return InMemoryEventStore()


def test_append_is_idempotent(store):
    event = llm_call("span-1", t=1)

    assert store.append(event) is True
    assert store.append(event) is False
    assert store.append(event.model_copy()) is False
    assert len(store.query("trace-1")) == 1


def test_query_orders_by_timestamp_then_sequence(store):
    late = llm_call("late", t=5)
    tie_a = make_event("trace_start", "root", t=1)
    tie_b = llm_call("first-call", t=1, parent="root")
    for event in (late, tie_a, tie_b):
        store.append(event)

    events = store.query("trace-1")

    assert [event.span_id for event in events] == ["root", "first-call", "late"]
    assert [event.seq for event in events] == [2, 3, 1]


def test_carrier_and_content_on_one_span_are_both_kept(store):
    store.append(llm_call("span-1", t=1))
    store.append(signal_carrier("span-1", "high_latency", t=1))
    store.append(signal_carrier("span-1", "token_spike", t=1))

    assert len(store.query("trace-1")) == 3


def test_unknown_trace_is_empty(store):
    assert store.query("nope") == []


def test_traces_are_isolated(store):
    store.append(llm_call("a", t=1))
    store.append(make_event("trace_start", "b", trace_id="trace-2"))

    assert [event.span_id for event in store.query("trace-1")] == ["a"]
    assert [event.span_id for event in store.query("trace-2")] == ["b"]


def test_redis_store_sets_retention():
    redis = FakeRedis()
    store = RedisEventStore(redis_client=redis, retention_seconds=120)

    store.append(llm_call("a"))

    assert redis.ttls[trace_events_key("trace-1")] == 120
    assert redis.ttls["trace_seq:trace-1"] == 120


def test_redis_outage_is_surfaced():
    store = RedisEventStore(redis_client=DownRedis(), retention_seconds=60)

    with pytest.raises(EventStoreUnavailable):
        store.append(llm_call("a"))
    with pytest.raises(EventStoreUnavailable):
        store.query("trace-1")
    assert store.ping() is False


def test_rejected_write_is_quarantined():
    store = RedisEventStore(redis_client=RejectingRedis(), retention_seconds=60)

    with pytest.raises(QuarantineError) as excinfo:
        store.append(llm_call("a"))
    assert excinfo.value.details["span_id"] == "a"


def test_unreadable_stored_records_are_skipped():
    redis = FakeRedis()
    store = RedisEventStore(redis_client=redis, retention_seconds=60)
    store.append(llm_call("a"))
    redis.hashes[trace_events_key("trace-1")]["garbage"] = "{\"not\": \"an event\"}"

    assert [event.span_id for event in store.query("trace-1")] == ["a"]


def test_build_event_store_selects_backend():
    assert isinstance(build_event_store(Settings(event_store_backend="memory")), InMemoryEventStore)
