from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    queued = "queued"
    active = "active"
    completed = "completed"
    failed = "failed"


class JobTrigger(str, Enum):
    high_severity_signal = "high_severity_signal"
    explicit_request = "explicit_request"
    sampled = "sampled"


class AnalysisJob(BaseModel):
    job_id: str
    trace_id: str
    tenant_id: Optional[str] = None
    project_id: Optional[str] = None
    span_id: Optional[str] = None
    layers: List[str]
    trigger: JobTrigger
    signal_names: List[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.queued
    attempts_made: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    results: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.completed, JobStatus.failed)


class EnqueueResult(BaseModel):
    job_id: str
    status: JobStatus
    created: bool


class Rejection(BaseModel):
    index: int
    reason: str


class IngestionResult(BaseModel):
    ingested_count: int = 0
    rejected: List[Rejection] = Field(default_factory=list)
    signal_count: int = 0
    escalated_trace_ids: List[str] = Field(default_factory=list)


class AnalysisRequest(BaseModel):
    layers: List[str] = Field(default_factory=lambda: ["layer4"])
    span_id: Optional[str] = None


class JobStats(BaseModel):
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
