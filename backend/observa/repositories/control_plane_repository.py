from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import Base
from ..models.analysis import AnalysisJob, EnqueueResult, JobStats, JobStatus, JobTrigger
from ..models.events import CanonicalEvent, EventType

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def active_key_for(trace_id: str, layers: Sequence[str]) -> str:
    return f"{trace_id}|{','.join(sorted(set(layers)))}"


class AnalysisJobModel(Base):
    """Analysis job ORM model"""
    __tablename__ = "analysis_jobs"

    job_id = Column(String(36), primary_key=True)
    trace_id = Column(String(256), nullable=False, index=True)
    tenant_id = Column(String(256), nullable=True, index=True)
    project_id = Column(String(256), nullable=True)
    span_id = Column(String(256), nullable=True)
    layers = Column(JSON, nullable=False)
    trigger = Column(String(32), nullable=False)
    signal_names = Column(JSON, nullable=False, default=list)
    status = Column(String(16), nullable=False, default="queued", index=True)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    results = Column(JSON, nullable=False, default=dict)
    # Set while queued/active, cleared on completion or failure.
    active_key = Column(String(600), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True, index=True)


class TraceIndexModel(Base):
    __tablename__ = "trace_index"

    trace_id = Column(String(256), primary_key=True)
    tenant_id = Column(String(256), nullable=False, index=True)
    project_id = Column(String(256), nullable=False)
    environment = Column(String(16), nullable=False)
    conversation_id = Column(String(256), nullable=True, index=True)
    session_id = Column(String(256), nullable=True, index=True)
    user_id = Column(String(256), nullable=True, index=True)
    event_count = Column(Integer, nullable=False, default=0)
    has_error = Column(Boolean, nullable=False, default=False)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)


class ConversationModel(Base):
    __tablename__ = "conversations"

    tenant_id = Column(String(256), primary_key=True)
    conversation_id = Column(String(256), primary_key=True)
    project_id = Column(String(256), nullable=False)
    user_id = Column(String(256), nullable=True)
    trace_count = Column(Integer, nullable=False, default=0)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)


class UserSessionModel(Base):
    __tablename__ = "user_sessions"

    tenant_id = Column(String(256), primary_key=True)
    session_id = Column(String(256), primary_key=True)
    project_id = Column(String(256), nullable=False)
    user_id = Column(String(256), nullable=True)
    conversation_id = Column(String(256), nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)


class EndUserModel(Base):
    __tablename__ = "end_users"

    tenant_id = Column(String(256), primary_key=True)
    user_id = Column(String(256), primary_key=True)
    project_id = Column(String(256), nullable=False)
    trace_count = Column(Integer, nullable=False, default=0)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)


class ControlPlaneRepository:
    """Analysis job bookkeeping and trace/conversation/session/user indices."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # --- Analysis jobs -----------------------------------------------------
    async def enqueue_job(
        self,
        trace_id: str,
        layers: Sequence[str],
        trigger: JobTrigger,
        *,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
        span_id: Optional[str] = None,
        signal_names: Iterable[str] = (),
        max_attempts: int = 3,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Create a job unless one for the same trace and layer set is still queued or active."""
        now = now or utc_now()
        key = active_key_for(trace_id, layers)
        existing = await self._find_active(key)
        if existing is not None:
            return EnqueueResult(job_id=existing.job_id, status=JobStatus(existing.status), created=False)

        db_job = AnalysisJobModel(
            job_id=str(uuid.uuid4()),
            trace_id=trace_id,
            tenant_id=tenant_id,
            project_id=project_id,
            span_id=span_id,
            layers=sorted(set(layers)),
            trigger=trigger.value,
            signal_names=sorted(set(signal_names)),
            status=JobStatus.queued.value,
            attempts_made=0,
            max_attempts=max_attempts,
            next_attempt_at=now,
            results={},
            active_key=key,
            created_at=now,
            updated_at=now,
        )
        self.session.add(db_job)
        try:
            await self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent enqueue of the same key.
            await self.session.rollback()
            existing = await self._find_active(key)
            if existing is None:
                raise
            return EnqueueResult(job_id=existing.job_id, status=JobStatus(existing.status), created=False)
        return EnqueueResult(job_id=db_job.job_id, status=JobStatus.queued, created=True)

    async def _find_active(self, key: str) -> Optional[AnalysisJobModel]:
        result = await self.session.execute(select(AnalysisJobModel).where(AnalysisJobModel.active_key == key))
        return result.scalar_one_or_none()

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        db_job = await self.session.get(AnalysisJobModel, job_id, populate_existing=True)
        if not db_job:
            return None
        return self._to_domain(db_job)

    async def claim_job(self, job_id: str, lease_seconds: float, now: Optional[datetime] = None) -> Optional[AnalysisJob]:
        """Atomically move a due job to active and take a lease on it.

        A job is claimable when it is queued and due, or active with an
        expired lease and attempts left. Returns None when another worker
        holds it or it is not due.
        """
        now = now or utc_now()
        claimable = or_(
            and_(
                AnalysisJobModel.status == JobStatus.queued.value,
                or_(AnalysisJobModel.next_attempt_at.is_(None), AnalysisJobModel.next_attempt_at <= now),
            ),
            and_(
                AnalysisJobModel.status == JobStatus.active.value,
                AnalysisJobModel.lease_expires_at < now,
                AnalysisJobModel.attempts_made < AnalysisJobModel.max_attempts,
            ),
        )
        result = await self.session.execute(
            update(AnalysisJobModel)
            .where(AnalysisJobModel.job_id == job_id, claimable)
            .values(
                status=JobStatus.active.value,
                attempts_made=AnalysisJobModel.attempts_made + 1,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount != 1:
            return None
        return await self.get_job(job_id)

    async def record_failure(
        self,
        job_id: str,
        error: str,
        backoff_base_seconds: float,
        now: Optional[datetime] = None,
    ) -> Optional[AnalysisJob]:
        """Requeue with exponential backoff, or fail permanently once attempts are exhausted."""
        now = now or utc_now()
        db_job = await self.session.get(AnalysisJobModel, job_id, populate_existing=True)
        if not db_job:
            return None
        db_job.last_error = error
        db_job.lease_expires_at = None
        db_job.updated_at = now
        if db_job.attempts_made >= db_job.max_attempts:
            db_job.status = JobStatus.failed.value
            db_job.finished_at = now
            db_job.active_key = None
        else:
            delay = backoff_delay(backoff_base_seconds, db_job.attempts_made)
            db_job.status = JobStatus.queued.value
            db_job.next_attempt_at = now + timedelta(seconds=delay)
        await self.session.commit()
        return self._to_domain(db_job)

    async def complete_job(
        self, job_id: str, results: Dict[str, Any], now: Optional[datetime] = None
    ) -> Optional[AnalysisJob]:
        now = now or utc_now()
        db_job = await self.session.get(AnalysisJobModel, job_id, populate_existing=True)
        if not db_job:
            return None
        db_job.status = JobStatus.completed.value
        db_job.results = results
        db_job.lease_expires_at = None
        db_job.last_error = None
        db_job.finished_at = now
        db_job.updated_at = now
        db_job.active_key = None
        await self.session.commit()
        return self._to_domain(db_job)

    async def list_due_jobs(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or utc_now()
        result = await self.session.execute(
            select(AnalysisJobModel.job_id)
            .where(
                AnalysisJobModel.status == JobStatus.queued.value,
                or_(AnalysisJobModel.next_attempt_at.is_(None), AnalysisJobModel.next_attempt_at <= now),
            )
            .order_by(AnalysisJobModel.next_attempt_at, AnalysisJobModel.job_id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expire_stale_jobs(self, backoff_base_seconds: float, now: Optional[datetime] = None) -> int:
        """Treat every expired lease as a failed attempt."""
        now = now or utc_now()
        result = await self.session.execute(
            select(AnalysisJobModel.job_id).where(
                AnalysisJobModel.status == JobStatus.active.value,
                AnalysisJobModel.lease_expires_at < now,
            )
        )
        job_ids = list(result.scalars().all())
        for job_id in job_ids:
            await self.record_failure(job_id, "lease expired", backoff_base_seconds, now=now)
        return len(job_ids)

    async def purge_finished_jobs(
        self,
        completed_retention: timedelta,
        failed_retention: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utc_now()
        result = await self.session.execute(
            delete(AnalysisJobModel)
            .where(
                or_(
                    and_(
                        AnalysisJobModel.status == JobStatus.completed.value,
                        AnalysisJobModel.finished_at < now - completed_retention,
                    ),
                    and_(
                        AnalysisJobModel.status == JobStatus.failed.value,
                        AnalysisJobModel.finished_at < now - failed_retention,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def job_stats(self) -> JobStats:
        result = await self.session.execute(
            select(AnalysisJobModel.status, func.count()).group_by(AnalysisJobModel.status)
        )
        counts = {status: count for status, count in result.all()}
        return JobStats(**{status.value: counts.get(status.value, 0) for status in JobStatus})

    # --- Indices -----------------------------------------------------------
    async def index_events(self, events: Sequence[CanonicalEvent]) -> int:
        """Record trace, conversation, session and end-user identifiers. Returns traces touched."""
        by_trace: "OrderedDict[str, List[CanonicalEvent]]" = OrderedDict()
        for event in events:
            if event.is_signal_carrier:
                continue
            by_trace.setdefault(event.trace_id, []).append(event)

        for attempt in range(2):
            try:
                for trace_id, trace_events in by_trace.items():
                    await self._index_trace(trace_id, trace_events)
                await self.session.commit()
                break
            except IntegrityError:
                # A concurrent batch inserted one of our new rows first; re-read and update it.
                await self.session.rollback()
                if attempt:
                    raise
                logger.info("Index insert raced a concurrent batch, retrying", extra={"traces": len(by_trace)})
        return len(by_trace)

    async def _index_trace(self, trace_id: str, events: List[CanonicalEvent]) -> None:
        first = events[0]
        first_seen = min(event.timestamp for event in events)
        last_seen = max(event.timestamp for event in events)
        conversation_id = _first(events, "conversation_id")
        session_id = _first(events, "session_id")
        user_id = _first(events, "user_id")
        has_error = any(event.event_type == EventType.error for event in events)

        row = await self.session.get(TraceIndexModel, trace_id)
        is_new_trace = row is None
        if row is None:
            row = TraceIndexModel(
                trace_id=trace_id,
                tenant_id=first.tenant_id,
                project_id=first.project_id,
                environment=first.environment.value,
                event_count=0,
                has_error=False,
                first_seen_at=first_seen,
                last_seen_at=last_seen,
            )
            self.session.add(row)
        row.event_count = (row.event_count or 0) + len(events)
        row.has_error = bool(row.has_error) or has_error
        row.conversation_id = row.conversation_id or conversation_id
        row.session_id = row.session_id or session_id
        row.user_id = row.user_id or user_id
        row.first_seen_at = min(_aware(row.first_seen_at), first_seen)
        row.last_seen_at = max(_aware(row.last_seen_at), last_seen)

        if conversation_id:
            conversation = await self.session.get(ConversationModel, (first.tenant_id, conversation_id))
            if conversation is None:
                conversation = ConversationModel(
                    tenant_id=first.tenant_id,
                    conversation_id=conversation_id,
                    project_id=first.project_id,
                    trace_count=0,
                    first_seen_at=first_seen,
                    last_seen_at=last_seen,
                )
                self.session.add(conversation)
            conversation.user_id = conversation.user_id or user_id
            conversation.trace_count = (conversation.trace_count or 0) + (1 if is_new_trace else 0)
            conversation.last_seen_at = max(_aware(conversation.last_seen_at), last_seen)

        if session_id:
            user_session = await self.session.get(UserSessionModel, (first.tenant_id, session_id))
            if user_session is None:
                user_session = UserSessionModel(
                    tenant_id=first.tenant_id,
                    session_id=session_id,
                    project_id=first.project_id,
                    first_seen_at=first_seen,
                    last_seen_at=last_seen,
                )
                self.session.add(user_session)
            user_session.user_id = user_session.user_id or user_id
            user_session.conversation_id = user_session.conversation_id or conversation_id
            user_session.last_seen_at = max(_aware(user_session.last_seen_at), last_seen)

        if user_id:
            end_user = await self.session.get(EndUserModel, (first.tenant_id, user_id))
            if end_user is None:
                end_user = EndUserModel(
                    tenant_id=first.tenant_id,
                    user_id=user_id,
                    project_id=first.project_id,
                    trace_count=0,
                    first_seen_at=first_seen,
                    last_seen_at=last_seen,
                )
                self.session.add(end_user)
            end_user.trace_count = (end_user.trace_count or 0) + (1 if is_new_trace else 0)
            end_user.last_seen_at = max(_aware(end_user.last_seen_at), last_seen)

    async def get_trace_index(self, trace_id: str) -> Optional[Dict[str, Any]]:
        row = await self.session.get(TraceIndexModel, trace_id, populate_existing=True)
        if not row:
            return None
        return {
            "trace_id": row.trace_id,
            "tenant_id": row.tenant_id,
            "project_id": row.project_id,
            "environment": row.environment,
            "conversation_id": row.conversation_id,
            "session_id": row.session_id,
            "user_id": row.user_id,
            "event_count": row.event_count,
            "has_error": row.has_error,
            "first_seen_at": _aware(row.first_seen_at),
            "last_seen_at": _aware(row.last_seen_at),
        }

    def _to_domain(self, db_job: AnalysisJobModel) -> AnalysisJob:
        """Convert ORM model to domain model"""
        return AnalysisJob(
            job_id=db_job.job_id,
            trace_id=db_job.trace_id,
            tenant_id=db_job.tenant_id,
            project_id=db_job.project_id,
            span_id=db_job.span_id,
            layers=list(db_job.layers or []),
            trigger=JobTrigger(db_job.trigger),
            signal_names=list(db_job.signal_names or []),
            status=JobStatus(db_job.status),
            attempts_made=db_job.attempts_made,
            max_attempts=db_job.max_attempts,
            next_attempt_at=_aware(db_job.next_attempt_at),
            lease_expires_at=_aware(db_job.lease_expires_at),
            last_error=db_job.last_error,
            results=dict(db_job.results or {}),
            created_at=_aware(db_job.created_at),
            updated_at=_aware(db_job.updated_at),
            finished_at=_aware(db_job.finished_at),
        )


def backoff_delay(base_seconds: float, attempts_made: int) -> float:
    """Delay before the next attempt: base, 2*base, 4*base, ..."""
    return base_seconds * (2 ** max(attempts_made - 1, 0))


def _first(events: Sequence[CanonicalEvent], attribute_name: str) -> Optional[str]:
    for event in events:
        value = getattr(event, attribute_name)
        if value:
            return value
    return None
