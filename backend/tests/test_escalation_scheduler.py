import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
Tests for escalation from deterministic signals to deep analysis.

**Property: Sampling is deterministic**
A trace's sample bucket depends only on its id and lies in [0, 1).
"""

import asyncio
import time

import pytest
from hypothesis import given, strategies as st

from observa.core.config import Settings
from observa.core.errors import EscalationUnavailable
from observa.models.analysis import JobStatus, JobTrigger
from observa.models.signals import Severity, Signal
from observa.repositories.control_plane_repository import ControlPlaneRepository
from observa.services.escalation_scheduler import EscalationScheduler, sample_bucket


def make_signal(name="tool_error", severity=Severity.high, span_id="span-1"):
    return Signal(signal_name=name, severity=severity, trace_id="trace-1", target_span_id=span_id, value=True)


def broken_session_factory():
    raise RuntimeError("control plane unreachable")


class SlowSession:
    async def __aenter__(self):
        await asyncio.sleep(5)

    async def __aexit__(self, *exc_info):
        return False


def load_job(session_factory, job_id):
    async def _load():
        async with session_factory() as session:
            return await ControlPlaneRepository(session).get_job(job_id)

    return asyncio.run(_load())


@pytest.fixture
def scheduler(session_factory, app_settings, dispatched):
    return EscalationScheduler(session_factory, dispatched.append, app_settings)


def test_high_severity_signal_enqueues_analysis(scheduler, session_factory, dispatched):
    signals = [make_signal("high_latency", span_id="llm-1"), make_signal("tool_error", span_id="tool-1")]

    result = asyncio.run(scheduler.escalate("trace-1", signals, tenant_id="tenant-a", project_id="project-a"))

    assert result.created
    assert dispatched == [result.job_id]
    job = load_job(session_factory, result.job_id)
    assert job.layers == ["layer4"]
    assert job.trigger == JobTrigger.high_severity_signal
    assert job.span_id == "llm-1"
    assert job.signal_names == ["high_latency", "tool_error"]
    assert job.tenant_id == "tenant-a"
    assert job.status == JobStatus.queued


@pytest.mark.parametrize("severity", [Severity.low, Severity.medium])
def test_lower_severities_do_not_escalate(scheduler, dispatched, severity):
    assert asyncio.run(scheduler.escalate("trace-1", [make_signal(severity=severity)])) is None
    assert asyncio.run(scheduler.escalate("trace-1", [])) is None
    assert dispatched == []


def test_repeated_escalation_is_deduplicated(scheduler, dispatched):
    first = asyncio.run(scheduler.escalate("trace-1", [make_signal()]))
    second = asyncio.run(scheduler.escalate("trace-1", [make_signal("error_event")]))

    assert second.job_id == first.job_id
    assert second.created is False
    assert dispatched == [first.job_id]


def test_enqueue_failure_never_reaches_the_caller(app_settings, dispatched):
    scheduler = EscalationScheduler(broken_session_factory, dispatched.append, app_settings)

    assert asyncio.run(scheduler.escalate("trace-1", [make_signal()])) is None
    assert dispatched == []


def test_enqueue_is_bounded_by_timeout(dispatched):
    settings = Settings(event_store_backend="memory", escalation_timeout_seconds=0.05)
    scheduler = EscalationScheduler(SlowSession, dispatched.append, settings)

    assert asyncio.run(scheduler.escalate("trace-1", [make_signal()])) is None
    assert dispatched == []


def test_blocking_dispatch_is_bounded_by_timeout(session_factory):
    settings = Settings(event_store_backend="memory", escalation_timeout_seconds=0.5)
    published = []

    def stalled_broker(job_id):
        time.sleep(2)
        published.append(job_id)

    scheduler = EscalationScheduler(session_factory, stalled_broker, settings)

    async def timed_escalation():
        started = time.monotonic()
        result = await scheduler.escalate("trace-1", [make_signal()])
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(timed_escalation())

    assert result is None
    assert elapsed < 1.5
    # The publish finishes in the background; the job row is already queued.
    [job_id] = published
    assert load_job(session_factory, job_id).status == JobStatus.queued


def test_disabled_escalation(session_factory, dispatched):
    settings = Settings(event_store_backend="memory", escalation_enabled=False)
    scheduler = EscalationScheduler(session_factory, dispatched.append, settings)

    assert asyncio.run(scheduler.escalate("trace-1", [make_signal()])) is None


def test_sampling_schedules_layer3(session_factory, dispatched):
    settings = Settings(event_store_backend="memory", analysis_sample_rate=1.0)
    scheduler = EscalationScheduler(session_factory, dispatched.append, settings)

    result = asyncio.run(scheduler.escalate("trace-1", [make_signal(severity=Severity.low)]))

    job = load_job(session_factory, result.job_id)
    assert job.layers == ["layer3"]
    assert job.trigger == JobTrigger.sampled
    assert job.signal_names == []


@given(trace_id=st.text(min_size=1, max_size=64))
def test_sample_bucket_is_stable(trace_id):
    bucket = sample_bucket(trace_id)
    assert 0.0 <= bucket < 1.0
    assert sample_bucket(trace_id) == bucket


def test_explicit_request_targets_the_span(scheduler, session_factory, dispatched):
    result = asyncio.run(scheduler.request("trace-9", ["layer3", "layer4"], span_id="span-7"))

    job = load_job(session_factory, result.job_id)
    assert job.trigger == JobTrigger.explicit_request
    assert job.layers == ["layer3", "layer4"]
    assert job.span_id == "span-7"
    assert dispatched == [result.job_id]


def test_explicit_request_surfaces_unavailability(app_settings, dispatched):
    scheduler = EscalationScheduler(broken_session_factory, dispatched.append, app_settings)

    with pytest.raises(EscalationUnavailable):
        asyncio.run(scheduler.request("trace-1", ["layer4"]))
