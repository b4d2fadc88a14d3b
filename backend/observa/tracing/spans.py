"""
Per-span event groups.

A ``SpanGroup`` collects every event sharing one span id and answers the
structural questions the resolver asks: is this a root, what parent did the
application declare, which capability does it represent.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from ..models.events import (
    CanonicalEvent,
    EventType,
    LLMCallPayload,
    RetrievalPayload,
    ToolCallPayload,
)
from ..models.signals import Signal


def dedupe(events: Iterable[CanonicalEvent]) -> List[CanonicalEvent]:
    """Drop re-delivered copies and return events in (timestamp, seq) order."""
    ordered = sorted(events, key=lambda event: event.sort_key())
    seen: Set[str] = set()
    unique: List[CanonicalEvent] = []
    for event in ordered:
        key = event.event_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


@dataclass
class SpanGroup:
    span_id: str
    events: List[CanonicalEvent] = field(default_factory=list)
    signals: List[Signal] = field(default_factory=list)

    @property
    def content_events(self) -> List[CanonicalEvent]:
        """Events describing the span's own behaviour, i.e. everything but signal carriers."""
        return [event for event in self.events if not event.is_signal_carrier]

    @property
    def has_content(self) -> bool:
        return any(not event.is_signal_carrier for event in self.events)

    @property
    def is_root_candidate(self) -> bool:
        # Carriers and error events describe another step; they never open an attempt.
        return any(
            event.parent_span_id is None and event.event_type != EventType.error
            for event in self.content_events
        )

    @property
    def declared_parent(self) -> Optional[str]:
        for event in self.content_events:
            if event.parent_span_id is not None:
                return event.parent_span_id
        return None

    @property
    def start_time(self) -> datetime:
        events = self.content_events or self.events
        return min(event.timestamp for event in events)

    @property
    def end_time(self) -> datetime:
        events = self.content_events or self.events
        ends = []
        for event in events:
            latency = getattr(event.payload, "latency_ms", None) or 0
            ends.append(event.timestamp + timedelta(milliseconds=latency))
        return max(ends)

    @property
    def first_seq(self) -> int:
        return min(event.seq for event in self.events)

    def order_key(self) -> tuple:
        return (self.start_time, self.first_seq, self.span_id)

    @property
    def event_types(self) -> List[str]:
        return list(dict.fromkeys(event.event_type.value for event in self.content_events))

    def payloads(self, payload_type: type) -> List:
        return [event.payload for event in self.content_events if isinstance(event.payload, payload_type)]

    @property
    def is_llm(self) -> bool:
        return bool(self.payloads(LLMCallPayload))

    @property
    def invoked_tools(self) -> Set[str]:
        names: Set[str] = set()
        for payload in self.payloads(LLMCallPayload):
            names.update(payload.invoked_tool_names())
        return names

    @property
    def capabilities(self) -> Set[str]:
        """Names an LLM call would use to invoke this span."""
        names: Set[str] = set()
        for payload in self.payloads(ToolCallPayload):
            names.add(payload.tool_name)
        for payload in self.payloads(RetrievalPayload):
            if payload.retriever:
                names.add(payload.retriever)
            names.add(EventType.retrieval.value)
        for event in self.content_events:
            if event.event_type in (EventType.embedding, EventType.vector_db_operation, EventType.cache_operation):
                names.add(event.event_type.value)
        return names


def group_by_span(events: List[CanonicalEvent]) -> "OrderedDict[str, SpanGroup]":
    groups: "OrderedDict[str, SpanGroup]" = OrderedDict()
    for event in events:
        group = groups.get(event.span_id)
        if group is None:
            group = groups[event.span_id] = SpanGroup(span_id=event.span_id)
        group.events.append(event)
    # Signals belong to the span they describe, wherever their carrier was filed.
    for event in events:
        if event.signal is None:
            continue
        target = event.signal.target_span_id
        if target not in groups:
            groups[target] = SpanGroup(span_id=target)
        groups[target].signals.append(event.signal)
    return groups


def partition_signals(groups: Dict[str, SpanGroup]) -> "tuple[Dict[str, SpanGroup], List[Signal]]":
    """Split groups into real spans and signals whose target span never appeared."""
    spans: Dict[str, SpanGroup] = OrderedDict()
    unmatched: List[Signal] = []
    for span_id, group in groups.items():
        if group.has_content:
            spans[span_id] = group
        else:
            unmatched.extend(group.signals)
    return spans, unmatched
