"""
Trace reconstruction.

``build_trace`` turns the flat event log of one trace into attempts of
nested spans. It is pure and deterministic: the same event set, in any
order, always produces the same ``Trace``.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..models.events import (
    AgentCreatePayload,
    CanonicalEvent,
    EmbeddingPayload,
    ErrorPayload,
    EventType,
    LLMCallPayload,
    OutputPayload,
    RetrievalPayload,
    ToolCallPayload,
    ToolResultStatus,
    TraceStartPayload,
)
from ..models.signals import Signal
from ..models.trace import Attempt, AttemptStatus, Span, SpanStatus, Trace
from .attribution import attribute, clear_duplicate_outputs
from .resolver import ResolvedStructure, resolve_parents
from .spans import SpanGroup, dedupe, group_by_span, partition_signals

logger = logging.getLogger(__name__)

ERROR_FINISH_REASONS = {"error"}
LLM_ERROR_STATUSES = {"error", "failed", "failure"}
TIMEOUT_STATUSES = {"timeout", "timed_out"}


def _signal_order(signal: Signal) -> tuple:
    return (signal.timestamp.isoformat() if signal.timestamp else "", signal.layer, signal.signal_name)


def _span_name(group: SpanGroup) -> str:
    for payload in group.payloads(LLMCallPayload):
        return payload.model
    for payload in group.payloads(ToolCallPayload):
        return payload.tool_name
    for payload in group.payloads(RetrievalPayload):
        return payload.retriever or EventType.retrieval.value
    for payload in group.payloads(AgentCreatePayload):
        if payload.agent_name:
            return payload.agent_name
    for payload in group.payloads(TraceStartPayload):
        if payload.name:
            return payload.name
    types = group.event_types
    return types[0] if types else "span"


def _span_status(group: SpanGroup) -> SpanStatus:
    status = SpanStatus.success
    for event in group.content_events:
        payload = event.payload
        found: Optional[SpanStatus] = None
        if isinstance(payload, ErrorPayload):
            found = SpanStatus.timeout if "timeout" in payload.error_type.lower() else SpanStatus.error
        elif isinstance(payload, ToolCallPayload) and payload.result_status != ToolResultStatus.success:
            found = SpanStatus(payload.result_status.value)
        elif isinstance(payload, LLMCallPayload):
            finish_reason = (payload.finish_reason or "").lower()
            llm_status = (payload.status or "").lower()
            if llm_status in TIMEOUT_STATUSES:
                found = SpanStatus.timeout
            elif finish_reason in ERROR_FINISH_REASONS or llm_status in LLM_ERROR_STATUSES:
                found = SpanStatus.error
        if found == SpanStatus.error:
            return found
        if found == SpanStatus.timeout:
            status = found
    return status


def _error_message(group: SpanGroup) -> Optional[str]:
    message = None
    for event in group.content_events:
        payload = event.payload
        if isinstance(payload, ToolCallPayload) and payload.error_message:
            message = payload.error_message
        elif isinstance(payload, ErrorPayload) and payload.error_message:
            message = payload.error_message
    return message


def _span_io(group: SpanGroup) -> tuple:
    llm_calls = group.payloads(LLMCallPayload)
    if llm_calls:
        inputs = [call.input for call in llm_calls if call.input is not None]
        outputs = [call.output for call in llm_calls if call.output is not None]
        return (inputs[0] if inputs else None, outputs[-1] if outputs else None)
    for payload in group.payloads(ToolCallPayload):
        return payload.args, payload.result
    for payload in group.payloads(RetrievalPayload):
        return payload.query, payload.retrieval_context_ids
    span_input = None
    span_output = None
    for payload in group.payloads(TraceStartPayload):
        span_input = payload.input
    for payload in group.payloads(OutputPayload):
        span_output = payload.final_output
    return span_input, span_output


def synthesize_span(group: SpanGroup, structure: ResolvedStructure) -> Span:
    span_input, span_output = _span_io(group)
    llm_calls = group.payloads(LLMCallPayload)
    tool_calls = group.payloads(ToolCallPayload)
    latencies = [
        payload.latency_ms
        for payload in (event.payload for event in group.content_events)
        if getattr(payload, "latency_ms", None) is not None
    ]
    cost = sum(call.cost or 0 for call in llm_calls)
    cost += sum(payload.cost or 0 for payload in group.payloads(EmbeddingPayload))
    tokens = sum(call.token_count or 0 for call in llm_calls)
    return Span(
        span_id=group.span_id,
        parent_span_id=structure.parents.get(group.span_id),
        original_parent_span_id=group.declared_parent,
        parent_inferred=group.span_id in structure.inferred,
        event_types=group.event_types,
        name=_span_name(group),
        status=_span_status(group),
        start_time=group.start_time,
        end_time=group.end_time,
        latency_ms=max(latencies) if latencies else None,
        input=span_input,
        output=span_output,
        model=llm_calls[0].model if llm_calls else None,
        tool_name=tool_calls[0].tool_name if tool_calls else None,
        cost=cost,
        tokens=tokens,
        error_message=_error_message(group),
        signals=sorted(group.signals, key=_signal_order),
        attributes={
            event.event_type.value: event.payload.model_dump(mode="json", exclude={"kind"}, exclude_none=True)
            for event in group.content_events
        },
    )


def _failure_reasons(root: Span) -> List[str]:
    reasons: List[str] = []
    for span in root.walk():
        if span.status == SpanStatus.success:
            continue
        detail = f": {span.error_message}" if span.error_message else ""
        reasons.append(f"{span.name} {span.status.value}{detail}")
    return reasons


class TraceReconstructor:
    """Rebuilds a ``Trace`` from whatever events exist for one trace id."""

    def build(self, events: Iterable[CanonicalEvent]) -> Optional[Trace]:
        unique = dedupe(events)
        if not unique:
            return None
        trace_ids = {event.trace_id for event in unique}
        if len(trace_ids) > 1:
            raise ValueError(f"Events span multiple traces: {sorted(trace_ids)}")

        groups, unmatched = partition_signals(group_by_span(unique))
        if not groups:
            # Only detached signals: nothing to draw, but keep them visible.
            return self._signals_only(unique, unmatched)

        structure = resolve_parents(groups)
        spans: Dict[str, Span] = {
            span_id: synthesize_span(group, structure) for span_id, group in groups.items()
        }

        first_root = spans[structure.roots[0]]
        if unmatched:
            first_root.signals = sorted(first_root.signals + unmatched, key=_signal_order)

        for span_id, parent_id in structure.parents.items():
            if parent_id is not None:
                spans[parent_id].children.append(spans[span_id])
        for span in spans.values():
            span.children.sort(key=lambda child: (child.start_time, child.span_id))

        attempts: List[Attempt] = []
        for number, root_id in enumerate(structure.roots, start=1):
            root = spans[root_id]
            members = list(root.walk())
            reasons = _failure_reasons(root)
            attempts.append(
                Attempt(
                    attempt_number=number,
                    root_span_id=root_id,
                    status=AttemptStatus.failed if reasons else AttemptStatus.success,
                    failure_reasons=reasons,
                    start_time=min(span.start_time for span in members),
                    end_time=max(span.end_time for span in members),
                    root=root,
                )
            )

        attribution = attribute(attempts, groups)
        all_spans = list(spans.values())
        clear_duplicate_outputs(all_spans, attribution.output)

        start = min(attempt.start_time for attempt in attempts)
        end = max(attempt.end_time for attempt in attempts)
        signals = sorted(
            (signal for span in all_spans for signal in span.signals),
            key=lambda signal: (_signal_order(signal), signal.target_span_id),
        )
        first = unique[0]
        trace = Trace(
            trace_id=first.trace_id,
            tenant_id=first.tenant_id,
            project_id=first.project_id,
            environment=first.environment.value,
            conversation_id=_first_value(unique, "conversation_id"),
            session_id=_first_value(unique, "session_id"),
            user_id=_first_value(unique, "user_id"),
            attempts=attempts,
            input=attribution.input,
            output=attribution.output,
            output_source=attribution.output_source,
            attempt_count=len(attempts),
            failure_count=sum(1 for attempt in attempts if attempt.status == AttemptStatus.failed),
            duration_ms=(end - start).total_seconds() * 1000,
            total_cost=sum(span.cost for span in all_spans),
            total_tokens=sum(span.tokens for span in all_spans),
            span_count=len(all_spans),
            event_count=len(unique),
            signals=signals,
            start_time=start,
            end_time=end,
        )
        logger.debug(
            "Reconstructed trace",
            extra={
                "trace_id": trace.trace_id,
                "attempt_count": trace.attempt_count,
                "failure_count": trace.failure_count,
                "span_count": trace.span_count,
                "promoted_root": structure.promoted_root,
            },
        )
        return trace

    @staticmethod
    def _signals_only(events: List[CanonicalEvent], signals: List[Signal]) -> Trace:
        first = events[0]
        return Trace(
            trace_id=first.trace_id,
            tenant_id=first.tenant_id,
            project_id=first.project_id,
            environment=first.environment.value,
            event_count=len(events),
            signals=sorted(signals, key=_signal_order),
            start_time=events[0].timestamp,
            end_time=events[-1].timestamp,
        )


def _first_value(events: List[CanonicalEvent], attribute_name: str) -> Optional[str]:
    for event in events:
        value = getattr(event, attribute_name)
        if value:
            return value
    return None


def build_trace(events: Iterable[CanonicalEvent]) -> Optional[Trace]:
    return TraceReconstructor().build(events)
