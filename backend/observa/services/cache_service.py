from __future__ import annotations

import hashlib
from typing import Dict, Optional

from redis import Redis

from ..core.config import get_settings


def trace_cache_key(trace_id: str, fingerprint: str) -> str:
    signature = hashlib.md5(f"{trace_id}:{fingerprint}".encode("utf-8")).hexdigest()
    return f"trace:{signature}"


class CacheService:
    """Redis-backed cache service with simple hit/miss metrics."""

    DEFAULT_LAYERS = ["trace"]

    def __init__(self, redis_client: Optional[Redis] = None, metric_layers: Optional[list[str]] = None):
        if redis_client is not None:
            self.redis = redis_client
        else:
            settings = get_settings()
            self.redis = Redis.from_url(settings.redis_url, decode_responses=True)
        layers = metric_layers or self.DEFAULT_LAYERS
        self.metrics: Dict[str, Dict[str, int]] = {layer: {"hit": 0, "miss": 0} for layer in layers}

    def set(self, key: str, value: str, ttl: int, layer: Optional[str] = None) -> None:
        self.redis.setex(key, ttl, value)

    def get(self, key: str, layer: Optional[str] = None) -> Optional[str]:
        value = self.redis.get(key)
        if value is not None:
            self._record_hit(layer)
            return value
        self._record_miss(layer)
        return None

    # --- Metrics helpers -------------------------------------------------
    def _record_hit(self, layer: Optional[str]) -> None:
        if layer and layer in self.metrics:
            self.metrics[layer]["hit"] += 1

    def _record_miss(self, layer: Optional[str]) -> None:
        if layer and layer in self.metrics:
            self.metrics[layer]["miss"] += 1
