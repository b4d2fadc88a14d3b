from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from ..core.config import Settings, get_settings
from ..models.events import CanonicalEvent
from ..models.trace import Trace
from ..repositories.event_store import EventStore
from ..tracing import build_trace
from .cache_service import CacheService, trace_cache_key

logger = logging.getLogger(__name__)

CACHE_LAYER = "trace"


def event_set_fingerprint(events: List[CanonicalEvent]) -> str:
    """Changes whenever an event is appended: event count plus highest sequence number."""
    return f"{len(events)}:{max((event.seq for event in events), default=0)}"


class TraceQueryService:
    def __init__(
        self,
        event_store: EventStore,
        cache: Optional[CacheService] = None,
        settings: Optional[Settings] = None,
    ):
        self.event_store = event_store
        self.cache = cache
        self.settings = settings or get_settings()

    def get_trace(self, trace_id: str) -> Optional[Trace]:
        """Reconstruct a trace from the event log, or None if no events exist for it."""
        events = self.event_store.query(trace_id)
        if not events:
            return None

        key = trace_cache_key(trace_id, event_set_fingerprint(events))
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        trace = build_trace(events)
        if trace is not None:
            self._cache_set(key, trace)
        return trace

    def _cache_get(self, key: str) -> Optional[Trace]:
        if self.cache is None:
            return None
        try:
            raw = self.cache.get(key, layer=CACHE_LAYER)
            return Trace.model_validate_json(raw) if raw is not None else None
        except (RedisError, PydanticValidationError):
            logger.warning("Trace cache read failed", extra={"cache_key": key}, exc_info=True)
            return None

    def _cache_set(self, key: str, trace: Trace) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, trace.model_dump_json(), self.settings.trace_cache_ttl_seconds, layer=CACHE_LAYER)
        except RedisError:
            logger.warning("Trace cache write failed", extra={"cache_key": key}, exc_info=True)
