"""
Layer 3/4 analysis worker.

Claims analysis jobs, calls the external scoring service per requested
layer, and writes the results back: raw results on the job row, derived
signals into the event store as signal carriers on the analysed span.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.errors import AnalysisJobFailure
from ..logging_utils import bind_job_context, bind_trace_context, clear_context
from ..models.analysis import AnalysisJob, JobStatus
from ..models.events import CanonicalEvent, Environment, ErrorPayload, EventType
from ..models.signals import Severity, Signal, SignalType
from ..models.trace import Trace
from ..repositories.control_plane_repository import ControlPlaneRepository
from ..repositories.event_store import EventStore
from ..telemetry.ingestion_metrics import record_signals
from ..telemetry.task_metrics import (
    record_task_completed,
    record_task_enqueued,
    record_task_failed,
    record_task_started,
)
from ..tracing import build_trace
from .scoring_client import ScoringClient

logger = logging.getLogger(__name__)

TASK_NAME = "analysis.run"


def _score_severity(score: float, high_below: float, medium_below: float) -> Severity:
    if score < high_below:
        return Severity.high
    if score < medium_below:
        return Severity.medium
    return Severity.low


def layer3_signals(result: Dict[str, Any], job: AnalysisJob, target_span_id: str) -> List[Signal]:
    def make(name: str, severity: Severity, value: Any, **metadata: Any) -> Signal:
        return Signal(
            signal_name=name,
            signal_type=SignalType.threshold,
            severity=severity,
            trace_id=job.trace_id,
            target_span_id=target_span_id,
            value=value,
            metadata={key: item for key, item in metadata.items() if item is not None},
            timestamp=job.created_at,
            layer="layer3",
        )

    signals: List[Signal] = []
    if result.get("embedding_cluster_id"):
        signals.append(
            make(
                "embedding_cluster", Severity.low, result["embedding_cluster_id"],
                cluster_id=result["embedding_cluster_id"], similarity_score=result.get("similarity_score"),
            )
        )
    drift = result.get("semantic_drift_score")
    if drift is not None:
        signals.append(
            make("semantic_drift", Severity.high if drift > 0.7 else Severity.medium, drift, drift_score=drift)
        )
    if result.get("is_duplicate"):
        signals.append(make("duplicate_output", Severity.low, True, duplicate_count=result.get("duplicate_count")))
    return signals


def layer4_signals(result: Dict[str, Any], job: AnalysisJob, target_span_id: str) -> List[Signal]:
    def make(name: str, severity: Severity, value: Any, **metadata: Any) -> Signal:
        return Signal(
            signal_name=name,
            signal_type=SignalType.threshold,
            severity=severity,
            trace_id=job.trace_id,
            target_span_id=target_span_id,
            value=value,
            metadata={key: item for key, item in metadata.items() if item is not None},
            timestamp=job.created_at,
            layer="layer4",
        )

    signals: List[Signal] = []
    faithfulness = result.get("faithfulness_score")
    if faithfulness is not None:
        signals.append(
            make(
                "faithfulness_score", _score_severity(faithfulness, 0.5, 0.7), faithfulness,
                score=faithfulness, reasoning=result.get("faithfulness_reasoning"),
            )
        )
    relevance = result.get("context_relevance_score")
    if relevance is not None:
        signals.append(
            make("context_relevance_score", _score_severity(relevance, 0.5, 0.7), relevance, score=relevance)
        )
    quality = result.get("quality_score")
    if quality is not None:
        signals.append(
            make(
                "quality_score", _score_severity(quality, 3, 4), quality,
                score=quality,
                coherence=result.get("coherence_score"),
                relevance=result.get("relevance_score"),
                helpfulness=result.get("helpfulness_score"),
            )
        )
    if result.get("is_hallucination"):
        confidence = result.get("hallucination_confidence") or 0
        signals.append(
            make(
                "potential_hallucination", Severity.high if confidence > 0.8 else Severity.medium, True,
                confidence=result.get("hallucination_confidence"), reasoning=result.get("hallucination_reasoning"),
            )
        )
    return signals


LAYER_CONVERTERS: Dict[str, Callable[[Dict[str, Any], AnalysisJob, str], List[Signal]]] = {
    "layer3": layer3_signals,
    "layer4": layer4_signals,
}


def build_scoring_context(job: AnalysisJob, trace: Optional[Trace]) -> Dict[str, Any]:
    context: Dict[str, Any] = {
        "trace_id": job.trace_id,
        "tenant_id": job.tenant_id,
        "project_id": job.project_id,
        "trigger": job.trigger.value,
        "signal_names": list(job.signal_names),
    }
    if trace is None:
        return context
    spans = [span for attempt in trace.attempts for span in attempt.root.walk()]
    model = next((span.model for span in spans if span.model), None)
    retrieved = [span.output for span in spans if "retrieval" in span.event_types and span.output is not None]
    context.update(
        {
            "query": trace.input,
            "response": trace.output,
            "context": retrieved or None,
            "model": model,
            "tokens_total": trace.total_tokens,
            "latency_ms": trace.duration_ms,
            "cost": trace.total_cost,
        }
    )
    return context


def analysis_carrier(signal: Signal, job: AnalysisJob, trace: Optional[Trace], events: List[CanonicalEvent]) -> CanonicalEvent:
    source = events[0] if events else None
    target = trace.find_span(signal.target_span_id) if trace else None
    return CanonicalEvent(
        tenant_id=source.tenant_id if source else (job.tenant_id or "unknown"),
        project_id=source.project_id if source else (job.project_id or "unknown"),
        environment=source.environment if source else Environment.prod,
        trace_id=job.trace_id,
        span_id=signal.target_span_id,
        parent_span_id=target.parent_span_id if target else None,
        timestamp=signal.timestamp,
        event_type=EventType.error,
        payload=ErrorPayload(error_type="signal", error_message=signal.signal_name),
        signal=signal,
        conversation_id=source.conversation_id if source else None,
        session_id=source.session_id if source else None,
        user_id=source.user_id if source else None,
    )


class AnalysisWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_store: EventStore,
        scoring_client: Optional[ScoringClient],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.event_store = event_store
        self.scoring_client = scoring_client
        self.settings = settings or get_settings()

    async def process(self, job_id: str, now: Optional[datetime] = None) -> Optional[AnalysisJob]:
        """Run one attempt of a job. Returns the job's state afterwards, or None if not claimable."""
        bind_job_context(job_id)
        try:
            async with self.session_factory() as session:
                repo = ControlPlaneRepository(session)
                job = await repo.claim_job(job_id, self.settings.analysis_job_timeout_seconds, now=now)
                if job is None:
                    logger.debug("Job not claimable", extra={"job_id": job_id})
                    return None
                bind_trace_context(job.trace_id)
                record_task_started(TASK_NAME)
                start = time.perf_counter()
                try:
                    results = await asyncio.wait_for(
                        self._run(job), timeout=self.settings.analysis_job_timeout_seconds
                    )
                except Exception as exc:
                    duration = time.perf_counter() - start
                    error = str(exc) or exc.__class__.__name__
                    updated = await repo.record_failure(
                        job_id, error, self.settings.analysis_backoff_base_seconds, now=now
                    )
                    final = updated is not None and updated.status == JobStatus.failed
                    record_task_failed(TASK_NAME, duration, error, final=final)
                    if final:
                        failure = AnalysisJobFailure(job_id, updated.attempts_made, error)
                        logger.error(failure.message, extra={**failure.details, "error_code": failure.code})
                    else:
                        logger.warning(
                            "Analysis attempt failed, retry scheduled",
                            extra={
                                "job_id": job_id,
                                "attempts_made": job.attempts_made,
                                "next_attempt_at": updated.next_attempt_at.isoformat()
                                if updated and updated.next_attempt_at
                                else None,
                                "error": error,
                            },
                        )
                    return updated

                completed = await repo.complete_job(job_id, results, now=now)
                record_task_completed(TASK_NAME, time.perf_counter() - start)
                logger.info("Analysis job completed", extra={"job_id": job_id, "layers": job.layers})
                return completed
        finally:
            clear_context()

    async def _run(self, job: AnalysisJob) -> Dict[str, Any]:
        events = self.event_store.query(job.trace_id)
        trace = build_trace(events)
        if self.scoring_client is None:
            logger.warning("Analysis service not configured, skipping layers", extra={"job_id": job.job_id})
            return {layer: {"skipped": "analysis service not configured"} for layer in job.layers}

        target = job.span_id
        if target is None and trace is not None and trace.attempts:
            target = trace.attempts[0].root_span_id
        target = target or job.trace_id

        payload = build_scoring_context(job, trace)
        results: Dict[str, Any] = {}
        signals: List[Signal] = []
        for layer in job.layers:
            converter = LAYER_CONVERTERS.get(layer)
            if converter is None:
                results[layer] = {"skipped": "unsupported layer"}
                continue
            result = await self.scoring_client.analyze(layer, payload)
            results[layer] = result
            signals.extend(converter(result, job, target))

        for signal in signals:
            self.event_store.append(analysis_carrier(signal, job, trace, events))
        record_signals(signals)
        results["signals"] = [signal.signal_name for signal in signals]
        return results


class AnalysisWorkerPool:
    """Fixed-size pool of asyncio consumers used when tasks run in-process."""

    def __init__(self, worker: AnalysisWorker, concurrency: int = 5):
        self.worker = worker
        self.concurrency = concurrency
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: List[asyncio.Task] = []
        self._timers: Set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"analysis-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Analysis worker pool started", extra={"concurrency": self.concurrency})

    def submit(self, job_id: str) -> None:
        if self._queue is None:
            raise RuntimeError("AnalysisWorkerPool is not started")
        record_task_enqueued(TASK_NAME, "inline")
        # Dispatch may arrive from a worker thread; asyncio.Queue is not thread-safe.
        self._loop.call_soon_threadsafe(self._queue.put_nowait, job_id)

    async def stop(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        self._loop = None

    def _schedule_retry(self, job: AnalysisJob) -> None:
        if job.next_attempt_at is None:
            return
        delay = max((job.next_attempt_at - datetime.now(job.next_attempt_at.tzinfo)).total_seconds(), 0.0)
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def resubmit() -> None:
            self._timers.discard(handle)
            if self._queue is not None:
                self.submit(job.job_id)

        handle = loop.call_later(delay, resubmit)
        self._timers.add(handle)

    async def _consume(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job_id = await queue.get()
            try:
                job = await self.worker.process(job_id)
                if job is not None and job.status == JobStatus.queued:
                    self._schedule_retry(job)
            except Exception:
                logger.exception("Analysis worker crashed on job", extra={"job_id": job_id, "worker": index})
            finally:
                queue.task_done()


async def sweep_analysis_jobs(
    session_factory: async_sessionmaker,
    dispatch: Callable[[str], None],
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Fail expired leases, purge finished jobs past retention, re-dispatch due jobs."""
    settings = settings or get_settings()
    async with session_factory() as session:
        repo = ControlPlaneRepository(session)
        expired = await repo.expire_stale_jobs(settings.analysis_backoff_base_seconds, now=now)
        purged = await repo.purge_finished_jobs(
            timedelta(hours=settings.completed_job_retention_hours),
            timedelta(hours=settings.failed_job_retention_hours),
            now=now,
        )
        due = await repo.list_due_jobs(now=now)
    for job_id in due:
        dispatch(job_id)
    report = {"expired": expired, "purged": purged, "dispatched": len(due)}
    if expired or purged or due:
        logger.info("Analysis job sweep finished", extra=report)
    return report
