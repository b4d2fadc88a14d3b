"""
Reconstructed trace views.

These models are built on demand from the immutable event log and are
never persisted. A new event for a trace means a new ``Trace`` instance.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .signals import Signal


class SpanStatus(str, Enum):
    success = "success"
    error = "error"
    timeout = "timeout"


class AttemptStatus(str, Enum):
    success = "success"
    failed = "failed"


class OutputSource(str, Enum):
    output_event = "output_event"
    last_llm_call = "last_llm_call"
    earlier_llm_call = "earlier_llm_call"
    error_message = "error_message"
    none = "none"


class Span(BaseModel):
    """One execution step, merged from every event sharing a span id."""

    span_id: str = Field(description="Span identifier shared by the merged events")
    parent_span_id: Optional[str] = Field(default=None, description="Resolved parent span")
    original_parent_span_id: Optional[str] = Field(
        default=None, description="Parent reference as emitted, before resolution"
    )
    parent_inferred: bool = Field(default=False, description="True when the parent was not taken verbatim")
    event_types: List[str] = Field(default_factory=list)
    name: str = Field(description="Display name such as the model or tool name")
    status: SpanStatus = SpanStatus.success
    start_time: datetime
    end_time: datetime
    latency_ms: Optional[float] = None
    input: Any = None
    output: Any = None
    model: Optional[str] = None
    tool_name: Optional[str] = None
    cost: float = 0.0
    tokens: int = 0
    error_message: Optional[str] = None
    signals: List[Signal] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    children: List["Span"] = Field(default_factory=list)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


class Attempt(BaseModel):
    """Spans reachable from one root span: one try of the workflow."""

    attempt_number: int
    root_span_id: str
    status: AttemptStatus = AttemptStatus.success
    failure_reasons: List[str] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    root: Span

    def spans(self) -> List[Span]:
        return list(self.root.walk())


class Trace(BaseModel):
    trace_id: str
    tenant_id: Optional[str] = None
    project_id: Optional[str] = None
    environment: Optional[str] = None
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    attempts: List[Attempt] = Field(default_factory=list)
    input: Any = None
    output: Any = None
    output_source: OutputSource = OutputSource.none
    attempt_count: int = 0
    failure_count: int = 0
    duration_ms: float = 0.0
    total_cost: float = 0.0
    total_tokens: int = 0
    span_count: int = 0
    event_count: int = 0
    signals: List[Signal] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def find_span(self, span_id: str) -> Optional[Span]:
        for attempt in self.attempts:
            for span in attempt.root.walk():
                if span.span_id == span_id:
                    return span
        return None


Span.model_rebuild()
