from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import get_settings
from ..core.database import AsyncSessionLocal
from ..repositories.event_store import EventStore, get_event_store
from ..services.cache_service import CacheService
from ..services.escalation_scheduler import EscalationScheduler
from ..services.ingestion_coordinator import IngestionCoordinator
from ..services.trace_query_service import TraceQueryService
from ..tasks.analysis_tasks import dispatch_analysis_job


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


def get_store() -> EventStore:
    return get_event_store()


@lru_cache(maxsize=1)
def get_cache_service() -> Optional[CacheService]:
    # Without Redis there is nothing to cache into.
    if get_settings().event_store_backend != "redis":
        return None
    return CacheService()


def get_escalation_scheduler(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> EscalationScheduler:
    return EscalationScheduler(session_factory, dispatch_analysis_job, get_settings())


def get_ingestion_coordinator(
    store: EventStore = Depends(get_store),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    scheduler: EscalationScheduler = Depends(get_escalation_scheduler),
) -> IngestionCoordinator:
    return IngestionCoordinator(store, session_factory, scheduler, settings=get_settings())


def get_trace_query_service(
    store: EventStore = Depends(get_store),
    cache: Optional[CacheService] = Depends(get_cache_service),
) -> TraceQueryService:
    return TraceQueryService(store, cache, get_settings())
