"""
Canonical event envelope and its typed payloads.

Every instrumented application emits the same envelope; the type-specific
part travels on the wire as ``attributes.<event_type>`` and is held here as
a tagged union with one payload model per event type.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated

from .signals import Signal


class EventType(str, Enum):
    trace_start = "trace_start"
    trace_end = "trace_end"
    llm_call = "llm_call"
    tool_call = "tool_call"
    retrieval = "retrieval"
    embedding = "embedding"
    vector_db_operation = "vector_db_operation"
    cache_operation = "cache_operation"
    agent_create = "agent_create"
    output = "output"
    error = "error"
    feedback = "feedback"


class Environment(str, Enum):
    dev = "dev"
    staging = "staging"
    prod = "prod"


class ToolResultStatus(str, Enum):
    success = "success"
    error = "error"
    timeout = "timeout"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)


class ToolInvocation(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    name: str
    id: Optional[str] = None
    arguments: Any = None


class LLMCallPayload(_Payload):
    kind: Literal["llm_call"] = "llm_call"
    model: str
    latency_ms: float = Field(ge=0)
    input: Any = None
    output: Any = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost: Optional[float] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    finish_reason: Optional[str] = None
    status: Optional[str] = None
    response_id: Optional[str] = None
    prompt_template_id: Optional[str] = None
    tool_calls: List[ToolInvocation] = Field(default_factory=list)
    output_messages: Optional[List[Any]] = None

    def invoked_tool_names(self) -> List[str]:
        """Names of every tool the model asked to run, in the order it asked."""
        names: List[str] = [call.name for call in self.tool_calls]
        for message in self.output_messages or []:
            if not isinstance(message, dict):
                continue
            kwargs = message.get("additional_kwargs") or {}
            for call in list(kwargs.get("tool_calls") or []) + list(message.get("tool_calls") or []):
                if not isinstance(call, dict):
                    continue
                function = call.get("function") or {}
                name = function.get("name") or call.get("name")
                if name:
                    names.append(name)
            function_call = kwargs.get("function_call") or {}
            if isinstance(function_call, dict) and function_call.get("name"):
                names.append(function_call["name"])
        if isinstance(self.output, dict):
            for call in self.output.get("tool_calls") or []:
                if isinstance(call, dict):
                    name = (call.get("function") or {}).get("name") or call.get("name")
                    if name:
                        names.append(name)
        return names

    @property
    def token_count(self) -> Optional[int]:
        if self.total_tokens is not None:
            return self.total_tokens
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


class ToolCallPayload(_Payload):
    kind: Literal["tool_call"] = "tool_call"
    tool_name: str
    result_status: ToolResultStatus
    latency_ms: float = Field(ge=0)
    args: Any = None
    args_hash: Optional[str] = None
    result: Any = None
    error_message: Optional[str] = None


class RetrievalPayload(_Payload):
    kind: Literal["retrieval"] = "retrieval"
    latency_ms: float = Field(default=0, ge=0)
    retriever: Optional[str] = None
    query: Any = None
    k: Optional[int] = None
    top_k: Optional[int] = None
    retrieval_context_ids: Optional[List[str]] = None
    similarity_scores: Optional[List[float]] = None


class EmbeddingPayload(_Payload):
    kind: Literal["embedding"] = "embedding"
    model: Optional[str] = None
    input_count: Optional[int] = None
    dimensions: Optional[int] = None
    latency_ms: float = Field(default=0, ge=0)
    cost: Optional[float] = None


class VectorDbOperationPayload(_Payload):
    kind: Literal["vector_db_operation"] = "vector_db_operation"
    operation: Optional[str] = None
    collection: Optional[str] = None
    result_count: Optional[int] = None
    latency_ms: float = Field(default=0, ge=0)


class CacheOperationPayload(_Payload):
    kind: Literal["cache_operation"] = "cache_operation"
    operation: Optional[str] = None
    key: Optional[str] = None
    hit: Optional[bool] = None
    latency_ms: float = Field(default=0, ge=0)


class AgentCreatePayload(_Payload):
    kind: Literal["agent_create"] = "agent_create"
    agent_name: Optional[str] = None
    agent_type: Optional[str] = None
    tools: List[Any] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OutputPayload(_Payload):
    kind: Literal["output"] = "output"
    final_output: Any = None
    output_length: Optional[int] = None


class ErrorPayload(_Payload):
    kind: Literal["error"] = "error"
    error_type: str = "error"
    error_message: Optional[str] = None
    stack_trace: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class FeedbackPayload(_Payload):
    kind: Literal["feedback"] = "feedback"
    type: Literal["like", "dislike", "rating", "correction"]
    rating: Optional[float] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = None
    outcome: Optional[Literal["success", "failure", "partial"]] = None


class TraceStartPayload(_Payload):
    kind: Literal["trace_start"] = "trace_start"
    name: Optional[str] = None
    input: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TraceEndPayload(_Payload):
    kind: Literal["trace_end"] = "trace_end"
    total_latency_ms: Optional[float] = None
    total_cost: Optional[float] = None
    total_tokens: Optional[int] = None
    outcome: Optional[Literal["success", "error", "timeout"]] = None


EventPayload = Annotated[
    Union[
        LLMCallPayload,
        ToolCallPayload,
        RetrievalPayload,
        EmbeddingPayload,
        VectorDbOperationPayload,
        CacheOperationPayload,
        AgentCreatePayload,
        OutputPayload,
        ErrorPayload,
        FeedbackPayload,
        TraceStartPayload,
        TraceEndPayload,
    ],
    Field(discriminator="kind"),
]

PAYLOAD_MODELS: Dict[EventType, type] = {
    EventType.llm_call: LLMCallPayload,
    EventType.tool_call: ToolCallPayload,
    EventType.retrieval: RetrievalPayload,
    EventType.embedding: EmbeddingPayload,
    EventType.vector_db_operation: VectorDbOperationPayload,
    EventType.cache_operation: CacheOperationPayload,
    EventType.agent_create: AgentCreatePayload,
    EventType.output: OutputPayload,
    EventType.error: ErrorPayload,
    EventType.feedback: FeedbackPayload,
    EventType.trace_start: TraceStartPayload,
    EventType.trace_end: TraceEndPayload,
}


class CanonicalEvent(BaseModel):
    """A validated, scrubbed telemetry event. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    project_id: str
    environment: Environment
    trace_id: str
    span_id: str
    parent_span_id: Optional[str] = None
    timestamp: datetime
    event_type: EventType
    payload: EventPayload
    signal: Optional[Signal] = None
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    agent_name: Optional[str] = None
    version: Optional[str] = None
    route: Optional[str] = None
    scrubbed_patterns: List[str] = Field(default_factory=list)
    seq: int = 0

    @property
    def is_signal_carrier(self) -> bool:
        return self.signal is not None

    @property
    def event_key(self) -> str:
        """Idempotency key: re-delivered copies of one event share it."""
        parts = [
            self.trace_id,
            self.span_id,
            self.timestamp.isoformat(),
            self.event_type.value,
            self.signal.signal_name if self.signal else "",
        ]
        return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()

    def sort_key(self) -> tuple:
        return (self.timestamp, self.seq, self.event_key)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "CanonicalEvent":
        return cls.model_validate_json(raw)
