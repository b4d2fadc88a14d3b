from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from celery import Celery, Task

from ..core.config import get_settings
from ..core.database import AsyncSessionLocal
from ..logging_utils import bind_job_context, clear_context
from ..models.analysis import AnalysisJob, JobStatus
from ..repositories.event_store import get_event_store
from ..services.analysis_worker import AnalysisWorker, AnalysisWorkerPool, sweep_analysis_jobs
from ..services.scoring_client import ScoringClient
from ..telemetry.task_metrics import record_task_enqueued

settings = get_settings()
celery_app = Celery(
    "observa",
    broker=settings.celery_broker_url,
    backend=settings.redis_url,
)
celery_app.conf.beat_schedule = {
    "analysis-sweep": {
        "task": "analysis.sweep",
        "schedule": settings.analysis_sweep_interval_seconds,
    },
}

logger = logging.getLogger(__name__)

RUN_TASK = "analysis.run"
SWEEP_TASK = "analysis.sweep"

# Publishing runs inside the escalation timeout, so broker retries stay short.
DISPATCH_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.2,
    "interval_max": 0.5,
}

_inline_pool: Optional[AnalysisWorkerPool] = None


def set_inline_pool(pool: Optional[AnalysisWorkerPool]) -> None:
    """Register the in-process pool that receives jobs when tasks run inline."""
    global _inline_pool
    _inline_pool = pool


def build_scoring_client() -> Optional[ScoringClient]:
    if not settings.analysis_service_url:
        return None
    return ScoringClient(settings.analysis_service_url)


async def _process_job(job_id: str) -> Optional[AnalysisJob]:
    # Each Celery invocation runs its own event loop, so the HTTP client is per run.
    scoring_client = build_scoring_client()
    worker = AnalysisWorker(AsyncSessionLocal, get_event_store(), scoring_client, settings)
    try:
        return await worker.process(job_id)
    finally:
        if scoring_client is not None:
            await scoring_client.aclose()


def retry_countdown(job: AnalysisJob, now: Optional[datetime] = None) -> float:
    if job.next_attempt_at is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    return max((job.next_attempt_at - now).total_seconds(), 0.0)


@celery_app.task(name=RUN_TASK, bind=True, max_retries=None)
def run_analysis_task(self: Task, job_id: str) -> Optional[Dict]:
    bind_job_context(job_id)
    try:
        job = asyncio.run(_process_job(job_id))
    finally:
        clear_context()
    if job is None:
        return None
    if job.status == JobStatus.queued:
        # The attempt ceiling lives on the job row, not in Celery.
        raise self.retry(countdown=retry_countdown(job))
    return {"job_id": job.job_id, "status": job.status.value}


@celery_app.task(name=SWEEP_TASK)
def sweep_analysis_task() -> Dict[str, int]:
    return asyncio.run(sweep_analysis_jobs(AsyncSessionLocal, dispatch_analysis_job, settings))


def dispatch_analysis_job(job_id: str) -> None:
    """Hand a queued job to Celery, or to the in-process pool when tasks run inline."""
    if not settings.run_tasks_inline:
        record_task_enqueued(RUN_TASK, "celery")
        run_analysis_task.apply_async(args=[job_id], retry=True, retry_policy=DISPATCH_RETRY_POLICY)
        return
    if _inline_pool is None or not _inline_pool.running:
        logger.warning("No inline analysis pool running, job left queued", extra={"job_id": job_id})
        return
    _inline_pool.submit(job_id)
