from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

TASK_ENQUEUED = Counter(
    "analysis_tasks_enqueued_total",
    "Analysis tasks handed to a dispatcher",
    ["task_name", "mode"],
)
TASK_STARTED = Counter(
    "analysis_tasks_started_total",
    "Analysis task attempts started",
    ["task_name"],
)
TASK_COMPLETED = Counter(
    "analysis_tasks_completed_total",
    "Analysis task attempts that succeeded",
    ["task_name"],
)
TASK_FAILED = Counter(
    "analysis_tasks_failed_total",
    "Analysis task attempts that raised",
    ["task_name", "final"],
)
TASK_DURATION = Histogram(
    "analysis_task_duration_seconds",
    "Analysis task attempt duration",
    ["task_name", "outcome"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, float("inf")),
)


def record_task_enqueued(task_name: str, mode: str) -> None:
    TASK_ENQUEUED.labels(task_name=task_name, mode=mode).inc()


def record_task_started(task_name: str) -> None:
    TASK_STARTED.labels(task_name=task_name).inc()


def record_task_completed(task_name: str, duration: float) -> None:
    TASK_COMPLETED.labels(task_name=task_name).inc()
    TASK_DURATION.labels(task_name=task_name, outcome="completed").observe(duration)


def record_task_failed(task_name: str, duration: float, error: str, final: bool = False) -> None:
    TASK_FAILED.labels(task_name=task_name, final=str(final).lower()).inc()
    TASK_DURATION.labels(task_name=task_name, outcome="failed").observe(duration)
    logger.debug("Recorded task failure", extra={"task_name": task_name, "error": error, "final": final})
