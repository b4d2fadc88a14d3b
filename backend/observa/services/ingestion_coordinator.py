"""
Batch ingestion: normalize, evaluate signals, persist, index, escalate.

A batch never fails as a whole because of one bad event. Envelope errors
(bad framing, oversized batch) and an unavailable event store are the only
failures raised to the caller.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.errors import QuarantineError
from ..logging_utils import bind_tenant_context
from ..models.analysis import IngestionResult, Rejection
from ..models.events import CanonicalEvent
from ..models.signals import Signal
from ..repositories.control_plane_repository import ControlPlaneRepository
from ..repositories.event_store import EventStore
from ..telemetry.ingestion_metrics import (
    record_batch_size,
    record_duplicate,
    record_ingested,
    record_rejected,
    record_signals,
)
from .escalation_scheduler import EscalationScheduler
from .normalizer import EventNormalizer
from .signal_engine import SignalEngine, to_carrier_event

logger = logging.getLogger(__name__)


class IngestionCoordinator:
    def __init__(
        self,
        event_store: EventStore,
        session_factory: async_sessionmaker,
        escalation_scheduler: Optional[EscalationScheduler] = None,
        normalizer: Optional[EventNormalizer] = None,
        signal_engine: Optional[SignalEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.event_store = event_store
        self.session_factory = session_factory
        self.escalation_scheduler = escalation_scheduler
        self.normalizer = normalizer or EventNormalizer(self.settings)
        self.signal_engine = signal_engine or SignalEngine(self.settings)

    async def ingest(
        self, body: Union[bytes, str, Sequence[Any]], content_type: Optional[str] = None
    ) -> IngestionResult:
        """Ingest one batch. Raises BatchFormatError, PayloadTooLargeError or EventStoreUnavailable."""
        raw_events = self.normalizer.parse_batch(body, content_type)
        record_batch_size(len(raw_events))
        normalized = self.normalizer.normalize(raw_events)
        rejected: List[Rejection] = list(normalized.rejections)
        if rejected:
            record_rejected("validation", len(rejected))

        stored: List[CanonicalEvent] = []
        written: List[CanonicalEvent] = []
        signals_by_trace: "OrderedDict[str, List[Signal]]" = OrderedDict()
        first_event: Dict[str, CanonicalEvent] = {}
        signal_count = 0

        for index, event in zip(normalized.indices, normalized.events):
            signals = self.signal_engine.evaluate(event)
            try:
                is_new = self._persist(event)
            except QuarantineError as exc:
                logger.warning(
                    "Event quarantined by event store",
                    extra={"trace_id": event.trace_id, "span_id": event.span_id, "error": exc.message},
                )
                record_rejected("quarantine")
                rejected.append(Rejection(index=index, reason=f"quarantined: {exc.message}"))
                continue

            stored.append(event)
            first_event.setdefault(event.trace_id, event)
            # Carriers are idempotent, so a redelivery repairs any that were lost.
            for signal in signals:
                self._persist_carrier(event, signal)
            if not is_new:
                continue
            written.append(event)
            trace_signals = signals_by_trace.setdefault(event.trace_id, [])
            trace_signals.extend(signals)
            if event.signal is not None:
                trace_signals.append(event.signal)
            signal_count += len(signals)
            record_signals(signals)

        rejected.sort(key=lambda rejection: rejection.index)
        # Re-delivered events were indexed and escalated when first written.
        await self._index(written)
        escalated = await self._escalate(signals_by_trace, first_event)

        logger.info(
            "Batch ingested",
            extra={
                "ingested": len(stored),
                "rejected": len(rejected),
                "signals": signal_count,
                "escalated": len(escalated),
            },
        )
        return IngestionResult(
            ingested_count=len(stored),
            rejected=rejected,
            signal_count=signal_count,
            escalated_trace_ids=escalated,
        )

    def _persist(self, event: CanonicalEvent) -> bool:
        if self.event_store.append(event):
            record_ingested(event.event_type.value)
            return True
        record_duplicate()
        return False

    def _persist_carrier(self, source: CanonicalEvent, signal: Signal) -> None:
        try:
            self._persist(to_carrier_event(source, signal))
        except QuarantineError as exc:
            # The source event is already stored; losing its badge must not reject it.
            logger.warning(
                "Signal carrier quarantined by event store",
                extra={
                    "trace_id": source.trace_id,
                    "span_id": signal.target_span_id,
                    "signal_name": signal.signal_name,
                    "error": exc.message,
                },
            )
            record_rejected("carrier_quarantine")

    async def _index(self, events: List[CanonicalEvent]) -> None:
        if not events:
            return
        try:
            async with self.session_factory() as session:
                await ControlPlaneRepository(session).index_events(events)
        except Exception:
            # Indices are derived data; the event log stays authoritative.
            logger.warning("Failed to index trace identifiers", extra={"events": len(events)}, exc_info=True)

    async def _escalate(
        self,
        signals_by_trace: "OrderedDict[str, List[Signal]]",
        first_event: Dict[str, CanonicalEvent],
    ) -> List[str]:
        if self.escalation_scheduler is None:
            return []
        escalated: List[str] = []
        for trace_id, signals in signals_by_trace.items():
            source = first_event[trace_id]
            bind_tenant_context(source.tenant_id)
            result = await self.escalation_scheduler.escalate(
                trace_id, signals, tenant_id=source.tenant_id, project_id=source.project_id
            )
            if result is not None:
                escalated.append(trace_id)
        return escalated
