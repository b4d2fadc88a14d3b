import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import timedelta

import pytest
from celery.exceptions import Retry

from factories import BASE_TIME
from observa.models.analysis import AnalysisJob, JobStatus, JobTrigger
from observa.tasks import analysis_tasks


class RecordingPool:
    def __init__(self, running=True):
        self.running = running
        self.submitted = []

    def submit(self, job_id):
        self.submitted.append(job_id)


def make_job(status, next_attempt_at=None):
    return AnalysisJob(
        job_id="job-1",
        trace_id="trace-1",
        layers=["layer4"],
        trigger=JobTrigger.high_severity_signal,
        status=status,
        next_attempt_at=next_attempt_at,
    )


@pytest.fixture(autouse=True)
def reset_pool():
    yield
    analysis_tasks.set_inline_pool(None)


def test_inline_dispatch_goes_to_the_pool():
    pool = RecordingPool()
    analysis_tasks.set_inline_pool(pool)

    analysis_tasks.dispatch_analysis_job("job-1")

    assert pool.submitted == ["job-1"]


@pytest.mark.parametrize("pool", [None, RecordingPool(running=False)])
def test_inline_dispatch_without_running_pool_leaves_job_queued(pool):
    analysis_tasks.set_inline_pool(pool)
    analysis_tasks.dispatch_analysis_job("job-1")
    if pool is not None:
        assert pool.submitted == []


def test_retry_countdown():
    job = make_job(JobStatus.queued, next_attempt_at=BASE_TIME + timedelta(seconds=4))

    assert analysis_tasks.retry_countdown(job, now=BASE_TIME) == 4.0
    assert analysis_tasks.retry_countdown(job, now=BASE_TIME + timedelta(seconds=10)) == 0.0
    assert analysis_tasks.retry_countdown(make_job(JobStatus.queued)) == 0.0


def test_task_retries_while_the_job_is_queued(monkeypatch):
    async def requeued(job_id):
        return make_job(JobStatus.queued, next_attempt_at=BASE_TIME)

    monkeypatch.setattr(analysis_tasks, "_process_job", requeued)

    with pytest.raises(Retry):
        analysis_tasks.run_analysis_task("job-1")


def test_task_reports_terminal_status(monkeypatch):
    async def completed(job_id):
        return make_job(JobStatus.completed)

    async def unclaimable(job_id):
        return None

    monkeypatch.setattr(analysis_tasks, "_process_job", completed)
    assert analysis_tasks.run_analysis_task("job-1") == {"job_id": "job-1", "status": "completed"}

    monkeypatch.setattr(analysis_tasks, "_process_job", unclaimable)
    assert analysis_tasks.run_analysis_task("job-1") is None


def test_celery_dispatch_bounds_broker_retries(monkeypatch):
    published = []

    def apply_async(args=None, **options):
        published.append((args, options))

    monkeypatch.setattr(analysis_tasks.settings, "run_tasks_inline", False)
    monkeypatch.setattr(analysis_tasks.run_analysis_task, "apply_async", apply_async)

    analysis_tasks.dispatch_analysis_job("job-1")

    [(args, options)] = published
    assert args == ["job-1"]
    assert options["retry"] is True
    assert options["retry_policy"]["max_retries"] == 2
    assert options["retry_policy"]["interval_max"] <= 0.5
