import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import json
from datetime import datetime, timezone

import pytest

from factories import raw_event
from observa.core.config import Settings
from observa.core.errors import BatchFormatError, PayloadTooLargeError
from observa.models.events import EventType, LLMCallPayload
from observa.services.normalizer import EventNormalizer, parse_timestamp, strip_nulls


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer(Settings(max_event_bytes=4096, max_batch_events=5, max_batch_bytes=64 * 1024))


def test_valid_event_becomes_canonical(normalizer):
    result = normalizer.normalize([raw_event()])

    assert result.rejections == []
    assert result.indices == [0]
    event = result.events[0]
    assert event.event_type == EventType.llm_call
    assert isinstance(event.payload, LLMCallPayload)
    assert event.payload.model == "gpt-4o"
    assert event.timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert event.parent_span_id is None


def test_one_bad_event_does_not_discard_the_batch(normalizer):
    batch = [
        raw_event(span_id="ok-1"),
        raw_event(event_type="telepathy"),
        raw_event(span_id="ok-2"),
        {"trace_id": "t"},
    ]

    result = normalizer.normalize(batch)

    assert [event.span_id for event in result.events] == ["ok-1", "ok-2"]
    assert result.indices == [0, 2]
    assert [rejection.index for rejection in result.rejections] == [1, 3]
    assert "event_type" in result.rejections[0].reason
    assert result.rejections[1].reason.startswith("missing required field(s)")


def test_payload_schema_errors_name_the_field(normalizer):
    event = raw_event(attributes={"llm_call": {"latency_ms": 10}})
    result = normalizer.normalize([event])
    assert result.rejections[0].reason == "attributes.llm_call.model: Field required"


def test_unknown_environment_is_rejected(normalizer):
    result = normalizer.normalize([raw_event(environment="qa")])
    assert "environment" in result.rejections[0].reason


@pytest.mark.parametrize("span_id", ["", "   ", "x" * 257, 17])
def test_identifier_rules(normalizer, span_id):
    result = normalizer.normalize([raw_event(span_id=span_id)])
    assert len(result.rejections) == 1
    assert "span_id" in result.rejections[0].reason


def test_oversized_event_is_rejected_individually(normalizer):
    big = raw_event(attributes={"llm_call": {"model": "m", "latency_ms": 1, "input": "x" * 5000}})
    result = normalizer.normalize([raw_event(), big])

    assert len(result.events) == 1
    assert result.rejections[0].index == 1
    assert result.rejections[0].reason.startswith("event exceeds 4096 bytes")


def test_null_attributes_are_dropped(normalizer):
    event = raw_event(
        conversation_id=None,
        attributes={"llm_call": {"model": "m", "latency_ms": 5, "cost": None, "output": None}},
    )
    canonical = normalizer.normalize([event]).events[0]
    assert canonical.conversation_id is None
    assert canonical.payload.cost is None
    assert strip_nulls({"a": None, "b": [1, None, {"c": None}]}) == {"b": [1, {}]}


def test_secrets_are_scrubbed_and_recorded(normalizer):
    event = raw_event(
        attributes={
            "llm_call": {
                "model": "gpt-4o",
                "latency_ms": 10,
                "input": "my key is sk-" + "A1" * 20 + " thanks",
            }
        }
    )
    canonical = normalizer.normalize([event]).events[0]
    assert canonical.payload.input == "my key is [REDACTED_OPENAI_KEY] thanks"
    assert canonical.scrubbed_patterns == ["openai_key"]


def test_signal_on_error_event_defaults_to_its_own_span(normalizer):
    event = raw_event(
        span_id="tool-span",
        event_type="error",
        attributes={
            "error": {"error_type": "signal", "error_message": "tool_error"},
            "signal": {"signal_name": "tool_error", "signal_type": "error", "signal_severity": "high", "signal_value": True},
        },
    )
    canonical = normalizer.normalize([event]).events[0]
    assert canonical.is_signal_carrier
    assert canonical.signal.target_span_id == "tool-span"
    assert canonical.signal.severity.value == "high"
    assert canonical.signal.value is True


def test_signal_on_non_error_event_is_rejected(normalizer):
    event = raw_event(
        attributes={
            "llm_call": {"model": "m", "latency_ms": 1},
            "signal": {"signal_name": "x", "severity": "low"},
        }
    )
    result = normalizer.normalize([event])
    assert "only allowed on error events" in result.rejections[0].reason


def test_parse_timestamp_accepts_iso_and_epoch_millis():
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T12:00:00Z") == expected
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    with pytest.raises(ValueError):
        parse_timestamp(True)


def test_parse_batch_json_array(normalizer):
    body = json.dumps([raw_event(), raw_event(span_id="s2")]).encode("utf-8")
    assert len(normalizer.parse_batch(body, "application/json")) == 2


def test_parse_batch_ndjson_keeps_bad_lines_as_rejections(normalizer):
    body = "\n".join([json.dumps(raw_event()), "{not json", "", json.dumps(raw_event(span_id="s2"))])
    records = normalizer.parse_batch(body.encode("utf-8"), "application/x-ndjson; charset=utf-8")
    result = normalizer.normalize(records)

    assert len(result.events) == 2
    assert result.rejections[0].index == 1
    assert result.rejections[0].reason.startswith("line_2: Invalid JSON")


@pytest.mark.parametrize("body", [b"{}", b"not json", b"[]", b"\xff\xfe"])
def test_parse_batch_rejects_bad_envelopes(normalizer, body):
    with pytest.raises(BatchFormatError):
        normalizer.parse_batch(body, "application/json")


def test_parse_batch_enforces_event_count(normalizer):
    body = json.dumps([raw_event(span_id=f"s{i}") for i in range(6)]).encode("utf-8")
    with pytest.raises(PayloadTooLargeError) as excinfo:
        normalizer.parse_batch(body, "application/json")
    assert excinfo.value.limit_type == "batch_events"
    assert excinfo.value.received == 6


def test_parse_batch_enforces_byte_size():
    normalizer = EventNormalizer(Settings(max_batch_bytes=100))
    with pytest.raises(PayloadTooLargeError) as excinfo:
        normalizer.parse_batch(json.dumps([raw_event()]).encode("utf-8"))
    assert excinfo.value.limit_type == "batch_bytes"
