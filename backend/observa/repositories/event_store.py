"""
Append-only event store.

Events are immutable once written and keyed by their idempotency key, so a
re-delivered event is a no-op. Each trace lives in one Redis hash; a per-trace
counter supplies the ingestion sequence used to break timestamp ties.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from functools import lru_cache
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import DataError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..core.config import Settings, get_settings
from ..core.errors import EventStoreUnavailable, QuarantineError
from ..models.events import CanonicalEvent

logger = logging.getLogger(__name__)


def trace_events_key(trace_id: str) -> str:
    return f"trace_events:{trace_id}"


def trace_seq_key(trace_id: str) -> str:
    return f"trace_seq:{trace_id}"


class EventStore(Protocol):
    def append(self, event: CanonicalEvent) -> bool: ...

    def query(self, trace_id: str) -> List[CanonicalEvent]: ...

    def ping(self) -> bool: ...


def _sorted(events: List[CanonicalEvent]) -> List[CanonicalEvent]:
    return sorted(events, key=lambda event: event.sort_key())


class RedisEventStore:
    """Redis-backed event store: one hash per trace, written with HSETNX."""

    def __init__(self, redis_client: Optional[Redis] = None, retention_seconds: Optional[int] = None):
        settings = get_settings()
        self.redis = redis_client or Redis.from_url(settings.redis_url, decode_responses=True)
        self.retention_seconds = retention_seconds or settings.event_retention_days * 24 * 60 * 60

    def append(self, event: CanonicalEvent) -> bool:
        """Store ``event`` unless an event with the same key exists. Returns True when written."""
        key = trace_events_key(event.trace_id)
        try:
            seq = int(self.redis.incr(trace_seq_key(event.trace_id)))
            record = event.model_copy(update={"seq": seq}).to_json()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise EventStoreUnavailable("Event store unavailable", {"error": str(exc)}) from exc
        except (TypeError, ValueError) as exc:
            raise QuarantineError(
                "Event cannot be serialized for storage",
                {"trace_id": event.trace_id, "span_id": event.span_id, "error": str(exc)},
            ) from exc

        try:
            written = bool(self.redis.hsetnx(key, event.event_key, record))
            self.redis.expire(key, self.retention_seconds)
            self.redis.expire(trace_seq_key(event.trace_id), self.retention_seconds)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise EventStoreUnavailable("Event store unavailable", {"error": str(exc)}) from exc
        except (DataError, ResponseError) as exc:
            raise QuarantineError(
                "Event rejected by event store",
                {"trace_id": event.trace_id, "span_id": event.span_id, "error": str(exc)},
            ) from exc
        return written

    def query(self, trace_id: str) -> List[CanonicalEvent]:
        try:
            raw = self.redis.hgetall(trace_events_key(trace_id))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise EventStoreUnavailable("Event store unavailable", {"error": str(exc)}) from exc

        events: List[CanonicalEvent] = []
        for field_name, payload in (raw or {}).items():
            try:
                events.append(CanonicalEvent.from_json(payload))
            except PydanticValidationError:
                logger.warning(
                    "Skipping unreadable stored event",
                    extra={"trace_id": trace_id, "event_key": field_name},
                )
        return _sorted(events)

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False


class InMemoryEventStore:
    """Process-local event store for development and tests."""

    def __init__(self) -> None:
        self._events: Dict[str, Dict[str, CanonicalEvent]] = defaultdict(dict)
        self._seq: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def append(self, event: CanonicalEvent) -> bool:
        with self._lock:
            stored = self._events[event.trace_id]
            if event.event_key in stored:
                return False
            self._seq[event.trace_id] += 1
            stored[event.event_key] = event.model_copy(update={"seq": self._seq[event.trace_id]})
            return True

    def query(self, trace_id: str) -> List[CanonicalEvent]:
        with self._lock:
            events = list(self._events.get(trace_id, {}).values())
        return _sorted(events)

    def ping(self) -> bool:
        return True


def build_event_store(settings: Settings) -> EventStore:
    if settings.event_store_backend == "memory":
        return InMemoryEventStore()
    return RedisEventStore(retention_seconds=settings.event_retention_days * 24 * 60 * 60)


@lru_cache(maxsize=1)
def get_event_store() -> EventStore:
    return build_event_store(get_settings())
