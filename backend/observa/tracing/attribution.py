"""
Trace-level input/output attribution.

The trace shows the user's question and the final answer exactly once. A
span whose own output is that final answer renders with a null output so
the answer is not displayed twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.events import CanonicalEvent, EventType, LLMCallPayload, OutputPayload, TraceStartPayload
from ..models.trace import Attempt, OutputSource, Span
from .spans import SpanGroup

CLEARABLE_EVENT_TYPES = (EventType.llm_call.value, EventType.output.value)


@dataclass
class Attribution:
    input: Any = None
    output: Any = None
    output_source: OutputSource = OutputSource.none


def same_output(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.strip() == right.strip()
    return left == right


def _events_in(attempt: Attempt, groups: Dict[str, SpanGroup]) -> List[CanonicalEvent]:
    events: List[CanonicalEvent] = []
    for span in attempt.root.walk():
        group = groups.get(span.span_id)
        if group is not None:
            events.extend(group.content_events)
    return sorted(events, key=lambda event: event.sort_key())


def _llm_calls(events: Iterable[CanonicalEvent]) -> List[LLMCallPayload]:
    return [event.payload for event in events if isinstance(event.payload, LLMCallPayload)]


def _resolve_input(attempts: List[Attempt], groups: Dict[str, SpanGroup]) -> Any:
    first_events = _events_in(attempts[0], groups)
    for call in _llm_calls(first_events):
        if call.input is not None:
            return call.input
    for attempt in attempts:
        for event in _events_in(attempt, groups):
            if isinstance(event.payload, TraceStartPayload) and event.payload.input is not None:
                return event.payload.input
    return None


def _resolve_output(attempts: List[Attempt], groups: Dict[str, SpanGroup]) -> Tuple[Any, OutputSource]:
    per_attempt = [_events_in(attempt, groups) for attempt in attempts]

    explicit = [
        event.payload.final_output
        for events in per_attempt
        for event in events
        if isinstance(event.payload, OutputPayload) and event.payload.final_output is not None
    ]
    if explicit:
        return explicit[-1], OutputSource.output_event

    last_outputs = [call.output for call in _llm_calls(per_attempt[-1]) if call.output is not None]
    if last_outputs:
        return last_outputs[-1], OutputSource.last_llm_call

    for events in reversed(per_attempt[:-1]):
        earlier = [call.output for call in _llm_calls(events) if call.output is not None]
        if earlier:
            return earlier[-1], OutputSource.earlier_llm_call

    failures = [
        span for attempt in attempts for span in attempt.root.walk() if span.error_message
    ]
    if failures:
        latest = max(failures, key=lambda span: (span.start_time, span.span_id))
        return f"Error: {latest.error_message}", OutputSource.error_message
    return None, OutputSource.none


def attribute(attempts: List[Attempt], groups: Dict[str, SpanGroup]) -> Attribution:
    if not attempts:
        return Attribution()
    output, source = _resolve_output(attempts, groups)
    return Attribution(input=_resolve_input(attempts, groups), output=output, output_source=source)


def clear_duplicate_outputs(spans: Iterable[Span], trace_output: Optional[Any]) -> None:
    if trace_output is None:
        return
    for span in spans:
        if span.output is None:
            continue
        if not any(event_type in CLEARABLE_EVENT_TYPES for event_type in span.event_types):
            continue
        if same_output(span.output, trace_output):
            span.output = None
