from __future__ import annotations

from typing import Iterable

from prometheus_client import Counter, Histogram

from ..models.signals import Signal

EVENTS_INGESTED = Counter(
    "events_ingested_total",
    "Canonical events written to the event store",
    ["event_type"],
)
EVENTS_DUPLICATE = Counter(
    "events_duplicate_total",
    "Re-delivered events skipped by the idempotency key",
)
EVENTS_REJECTED = Counter(
    "events_rejected_total",
    "Events rejected during normalization or storage",
    ["stage"],
)
SIGNALS_EMITTED = Counter(
    "signals_emitted_total",
    "Signals produced by the signal engine and analysis worker",
    ["signal_name", "severity", "layer"],
)
ESCALATIONS = Counter(
    "escalations_total",
    "Escalation decisions by outcome",
    ["outcome"],
)
BATCH_SIZE = Histogram(
    "ingest_batch_size",
    "Events per ingestion batch",
    buckets=(1, 5, 10, 50, 100, 250, 500, 1000, float("inf")),
)


def record_ingested(event_type: str) -> None:
    EVENTS_INGESTED.labels(event_type=event_type).inc()


def record_duplicate() -> None:
    EVENTS_DUPLICATE.inc()


def record_rejected(stage: str, count: int = 1) -> None:
    if count:
        EVENTS_REJECTED.labels(stage=stage).inc(count)


def record_signals(signals: Iterable[Signal]) -> None:
    for signal in signals:
        SIGNALS_EMITTED.labels(
            signal_name=signal.signal_name, severity=signal.severity.value, layer=signal.layer
        ).inc()


def record_escalation(outcome: str) -> None:
    ESCALATIONS.labels(outcome=outcome).inc()


def record_batch_size(size: int) -> None:
    BATCH_SIZE.observe(size)
