"""
Layer 2 signals: deterministic checks run on every ingested event.

``evaluate`` is pure. Thresholds arrive as an explicit argument on every
call so they can be overridden per tenant and environment.
"""

from __future__ import annotations

from typing import List, Optional

from ..core.config import Settings, SignalThresholds, get_settings
from ..models.events import (
    CanonicalEvent,
    ErrorPayload,
    EventType,
    LLMCallPayload,
    ToolCallPayload,
    ToolResultStatus,
)
from ..models.signals import Severity, Signal, SignalType


def _signal(
    event: CanonicalEvent,
    name: str,
    signal_type: SignalType,
    severity: Severity,
    value,
    **metadata,
) -> Signal:
    return Signal(
        signal_name=name,
        signal_type=signal_type,
        severity=severity,
        trace_id=event.trace_id,
        target_span_id=event.span_id,
        value=value,
        metadata={key: item for key, item in metadata.items() if item is not None},
        timestamp=event.timestamp,
    )


def _llm_signals(event: CanonicalEvent, payload: LLMCallPayload, thresholds: SignalThresholds) -> List[Signal]:
    signals: List[Signal] = []
    if payload.latency_ms > thresholds.high_latency_ms:
        signals.append(
            _signal(
                event, "high_latency", SignalType.threshold, Severity.high, payload.latency_ms,
                model=payload.model, threshold_ms=thresholds.high_latency_ms,
            )
        )
    elif payload.latency_ms > thresholds.medium_latency_ms:
        signals.append(
            _signal(
                event, "medium_latency", SignalType.threshold, Severity.medium, payload.latency_ms,
                model=payload.model, threshold_ms=thresholds.medium_latency_ms,
            )
        )

    tokens = payload.total_tokens
    if tokens is not None and tokens > thresholds.token_threshold:
        signals.append(
            _signal(
                event, "token_spike", SignalType.spike, Severity.high, tokens,
                model=payload.model, input_tokens=payload.input_tokens, output_tokens=payload.output_tokens,
            )
        )

    if payload.cost is not None and payload.cost > thresholds.cost_threshold:
        signals.append(
            _signal(
                event, "cost_spike", SignalType.spike, Severity.high, payload.cost,
                model=payload.model, tokens=tokens,
            )
        )
    return signals


def _tool_signals(event: CanonicalEvent, payload: ToolCallPayload, thresholds: SignalThresholds) -> List[Signal]:
    signals: List[Signal] = []
    if payload.result_status == ToolResultStatus.error:
        signals.append(
            _signal(
                event, "tool_error", SignalType.error, Severity.high, True,
                tool_name=payload.tool_name, error_message=payload.error_message,
            )
        )
    elif payload.result_status == ToolResultStatus.timeout:
        signals.append(
            _signal(
                event, "tool_timeout", SignalType.error, Severity.high, True,
                tool_name=payload.tool_name, latency_ms=payload.latency_ms,
            )
        )
    if payload.latency_ms > thresholds.tool_latency_ms:
        signals.append(
            _signal(
                event, "tool_latency", SignalType.threshold, Severity.medium, payload.latency_ms,
                tool_name=payload.tool_name, threshold_ms=thresholds.tool_latency_ms,
            )
        )
    return signals


def evaluate(event: CanonicalEvent, thresholds: Optional[SignalThresholds] = None) -> List[Signal]:
    """Map one canonical event to the signals it deterministically implies.

    Signal carriers produce nothing: they already are the output of an
    evaluation. Every returned signal targets ``event.span_id``.
    """
    if event.is_signal_carrier:
        return []
    thresholds = thresholds or SignalThresholds()
    payload = event.payload
    signals: List[Signal] = []

    if event.event_type == EventType.llm_call and isinstance(payload, LLMCallPayload):
        signals.extend(_llm_signals(event, payload, thresholds))
    elif event.event_type == EventType.tool_call and isinstance(payload, ToolCallPayload):
        signals.extend(_tool_signals(event, payload, thresholds))
    elif event.event_type == EventType.error and isinstance(payload, ErrorPayload):
        signals.append(
            _signal(
                event, "error_event", SignalType.error, Severity.high, True,
                error_type=payload.error_type, error_message=payload.error_message,
            )
        )

    if event.scrubbed_patterns:
        # Medium unless configured, so a scrubbed payload alone never escalates.
        signals.append(
            _signal(
                event, "contains_secrets", SignalType.threshold, Severity(thresholds.secrets_severity), True,
                secret_types=list(event.scrubbed_patterns),
            )
        )
    return signals


def to_carrier_event(source: CanonicalEvent, signal: Signal) -> CanonicalEvent:
    """Wrap a signal in an ``error`` event for storage next to its source.

    The carrier sits on the target span and inherits the source event's
    parent, so it can never look like a new attempt root.
    """
    return CanonicalEvent(
        tenant_id=source.tenant_id,
        project_id=source.project_id,
        environment=source.environment,
        trace_id=signal.trace_id,
        span_id=signal.target_span_id,
        parent_span_id=source.parent_span_id,
        timestamp=signal.timestamp or source.timestamp,
        event_type=EventType.error,
        payload=ErrorPayload(error_type="signal", error_message=signal.signal_name),
        signal=signal,
        conversation_id=source.conversation_id,
        session_id=source.session_id,
        user_id=source.user_id,
        agent_name=source.agent_name,
        version=source.version,
        route=source.route,
    )


class SignalEngine:
    """Thin wrapper binding a threshold resolver to ``evaluate``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def thresholds_for(self, event: CanonicalEvent) -> SignalThresholds:
        return self.settings.thresholds_for(event.tenant_id, event.environment.value)

    def evaluate(self, event: CanonicalEvent) -> List[Signal]:
        return evaluate(event, self.thresholds_for(event))
