import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
from datetime import timedelta

import pytest

from factories import BASE_TIME, llm_call, make_event, signal_carrier
from observa.models.analysis import JobStatus, JobTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from observa.repositories.control_plane_repository import (
    ControlPlaneRepository,
    TraceIndexModel,
    active_key_for,
    backoff_delay,
)

T0 = BASE_TIME


def run(session_factory, action):
    async def _run():
        async with session_factory() as session:
            return await action(ControlPlaneRepository(session))

    return asyncio.run(_run())


def enqueue(session_factory, trace_id="trace-1", layers=("layer4",), **kwargs):
    kwargs.setdefault("now", T0)
    return run(
        session_factory,
        lambda repo: repo.enqueue_job(trace_id, list(layers), JobTrigger.high_severity_signal, **kwargs),
    )


def claim(session_factory, job_id, at, lease_seconds=10):
    return run(session_factory, lambda repo: repo.claim_job(job_id, lease_seconds, now=at))


def fail(session_factory, job_id, at, error="boom"):
    return run(session_factory, lambda repo: repo.record_failure(job_id, error, 2.0, now=at))


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(2.0, attempt) for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_active_key_ignores_layer_order_and_duplicates():
    assert active_key_for("t", ["layer4", "layer3", "layer4"]) == active_key_for("t", ["layer3", "layer4"])


class TestEnqueue:
    def test_same_trace_and_layers_is_deduplicated(self, session_factory):
        first = enqueue(session_factory, layers=("layer4", "layer3"), signal_names=["tool_error"])
        second = enqueue(session_factory, layers=("layer3", "layer4"))

        assert first.created is True
        assert second.created is False
        assert second.job_id == first.job_id
        assert second.status == JobStatus.queued

        job = run(session_factory, lambda repo: repo.get_job(first.job_id))
        assert job.layers == ["layer3", "layer4"]
        assert job.signal_names == ["tool_error"]
        assert job.trigger == JobTrigger.high_severity_signal

    def test_different_layers_get_separate_jobs(self, session_factory):
        first = enqueue(session_factory, layers=("layer4",))
        second = enqueue(session_factory, layers=("layer3",))
        assert first.job_id != second.job_id

    def test_finished_job_frees_the_key(self, session_factory):
        first = enqueue(session_factory)
        claim(session_factory, first.job_id, T0)
        run(session_factory, lambda repo: repo.complete_job(first.job_id, {"layer4": {}}, now=T0))

        again = enqueue(session_factory)

        assert again.created is True
        assert again.job_id != first.job_id

    def test_unknown_job(self, session_factory):
        assert run(session_factory, lambda repo: repo.get_job("missing")) is None


class TestClaimAndRetry:
    def test_only_one_claim_holds_the_lease(self, session_factory):
        job_id = enqueue(session_factory).job_id

        claimed = claim(session_factory, job_id, T0)
        second = claim(session_factory, job_id, T0 + timedelta(seconds=1))

        assert claimed.status == JobStatus.active
        assert claimed.attempts_made == 1
        assert claimed.lease_expires_at == T0 + timedelta(seconds=10)
        assert second is None

    def test_failures_back_off_then_fail_permanently(self, session_factory):
        job_id = enqueue(session_factory, max_attempts=3).job_id

        claim(session_factory, job_id, T0)
        job = fail(session_factory, job_id, T0)
        assert job.status == JobStatus.queued
        assert job.next_attempt_at == T0 + timedelta(seconds=2)
        assert claim(session_factory, job_id, T0 + timedelta(seconds=1)) is None

        second = T0 + timedelta(seconds=2)
        assert claim(session_factory, job_id, second).attempts_made == 2
        job = fail(session_factory, job_id, second)
        assert job.next_attempt_at == second + timedelta(seconds=4)

        third = second + timedelta(seconds=4)
        assert claim(session_factory, job_id, third).attempts_made == 3
        job = fail(session_factory, job_id, third, error="scoring service down")

        assert job.status == JobStatus.failed
        assert job.last_error == "scoring service down"
        assert job.finished_at == third
        assert claim(session_factory, job_id, third + timedelta(hours=1)) is None
        assert enqueue(session_factory).created is True

    def test_expired_lease_can_be_reclaimed(self, session_factory):
        job_id = enqueue(session_factory).job_id
        claim(session_factory, job_id, T0, lease_seconds=10)

        assert claim(session_factory, job_id, T0 + timedelta(seconds=5)) is None
        reclaimed = claim(session_factory, job_id, T0 + timedelta(seconds=11))

        assert reclaimed is not None
        assert reclaimed.attempts_made == 2

    def test_expire_stale_jobs_counts_as_a_failed_attempt(self, session_factory):
        job_id = enqueue(session_factory).job_id
        claim(session_factory, job_id, T0, lease_seconds=10)
        later = T0 + timedelta(seconds=11)

        assert run(session_factory, lambda repo: repo.expire_stale_jobs(2.0, now=T0 + timedelta(seconds=5))) == 0
        assert run(session_factory, lambda repo: repo.expire_stale_jobs(2.0, now=later)) == 1

        job = run(session_factory, lambda repo: repo.get_job(job_id))
        assert job.status == JobStatus.queued
        assert job.last_error == "lease expired"
        assert job.next_attempt_at == later + timedelta(seconds=2)

    def test_list_due_jobs(self, session_factory):
        due = enqueue(session_factory, trace_id="a").job_id
        later = enqueue(session_factory, trace_id="b").job_id
        claim(session_factory, later, T0)
        fail(session_factory, later, T0)

        assert run(session_factory, lambda repo: repo.list_due_jobs(now=T0)) == [due]
        assert set(run(session_factory, lambda repo: repo.list_due_jobs(now=T0 + timedelta(seconds=3)))) == {
            due,
            later,
        }


def test_purge_respects_per_status_retention(session_factory):
    completed = enqueue(session_factory, trace_id="done").job_id
    claim(session_factory, completed, T0)
    run(session_factory, lambda repo: repo.complete_job(completed, {}, now=T0))

    failed = enqueue(session_factory, trace_id="broken", max_attempts=1).job_id
    claim(session_factory, failed, T0)
    fail(session_factory, failed, T0)

    purged = run(
        session_factory,
        lambda repo: repo.purge_finished_jobs(timedelta(hours=24), timedelta(hours=168), now=T0 + timedelta(hours=25)),
    )

    assert purged == 1
    assert run(session_factory, lambda repo: repo.get_job(completed)) is None
    assert run(session_factory, lambda repo: repo.get_job(failed)).status == JobStatus.failed


def test_job_stats(session_factory):
    enqueue(session_factory, trace_id="a")
    active = enqueue(session_factory, trace_id="b").job_id
    claim(session_factory, active, T0)

    stats = run(session_factory, lambda repo: repo.job_stats())

    assert stats.queued == 1
    assert stats.active == 1
    assert stats.completed == 0
    assert stats.failed == 0


def test_index_events_tracks_identifiers(session_factory):
    first_batch = [
        make_event("trace_start", "root", t=0, conversation_id="conv-1", session_id="sess-1"),
        llm_call("llm", t=1, parent="root"),
        signal_carrier("llm", "high_latency", t=1),
    ]
    second_batch = [
        make_event("error", "llm", t=2, payload={"error_type": "Timeout"}, user_id="user-1"),
    ]

    assert run(session_factory, lambda repo: repo.index_events(first_batch)) == 1
    run(session_factory, lambda repo: repo.index_events(second_batch))

    row = run(session_factory, lambda repo: repo.get_trace_index("trace-1"))
    assert row["event_count"] == 3
    assert row["has_error"] is True
    assert row["conversation_id"] == "conv-1"
    assert row["session_id"] == "sess-1"
    assert row["user_id"] == "user-1"
    assert row["first_seen_at"] == T0
    assert row["last_seen_at"] == T0 + timedelta(seconds=2)


@pytest.mark.parametrize("events", [[], [signal_carrier("x", "tool_error")]])
def test_index_events_ignores_carrier_only_batches(session_factory, events):
    assert run(session_factory, lambda repo: repo.index_events(events)) == 0


def test_index_events_recovers_from_a_concurrent_insert(session_factory, monkeypatch):
    original_get = AsyncSession.get
    rival_batches = []

    async def get_with_rival_insert(self, entity, ident, **kwargs):
        row = await original_get(self, entity, ident, **kwargs)
        if entity is TraceIndexModel and row is None and not rival_batches:
            # Another batch commits the same new trace between our read and our insert.
            rival_batches.append(ident)
            async with session_factory() as rival:
                await ControlPlaneRepository(rival).index_events(
                    [make_event("trace_start", "root", t=0, conversation_id="conv-1")]
                )
        return row

    monkeypatch.setattr(AsyncSession, "get", get_with_rival_insert)

    batch = [
        make_event(
            "llm_call", "llm", t=1, parent="root", payload={"model": "gpt-4o", "latency_ms": 100},
            conversation_id="conv-1", session_id="sess-1", user_id="user-1",
        )
    ]

    assert run(session_factory, lambda repo: repo.index_events(batch)) == 1
    monkeypatch.undo()

    assert rival_batches == ["trace-1"]
    row = run(session_factory, lambda repo: repo.get_trace_index("trace-1"))
    assert row["event_count"] == 2
    assert row["conversation_id"] == "conv-1"
    assert row["session_id"] == "sess-1"
    assert row["user_id"] == "user-1"
