from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from ..core.config import Settings, get_settings
from ..core.errors import BatchFormatError, PayloadTooLargeError, ValidationError
from ..models.analysis import Rejection
from ..models.events import PAYLOAD_MODELS, CanonicalEvent, Environment, EventType
from ..models.signals import Signal
from .secrets_scrubber import SecretScrubber, get_secret_scrubber

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"
MAX_ID_LENGTH = 256
REQUIRED_FIELDS = ("tenant_id", "project_id", "environment", "trace_id", "span_id", "timestamp", "event_type")
ID_FIELDS = ("tenant_id", "project_id", "trace_id", "span_id")
OPTIONAL_ID_FIELDS = ("parent_span_id", "conversation_id", "session_id", "user_id")
OPTIONAL_TEXT_FIELDS = ("agent_name", "version", "route")
SIGNAL_WIRE_ALIASES = {"signal_value": "value", "signal_severity": "severity"}


@dataclass(frozen=True)
class MalformedRecord:
    """Placeholder for an NDJSON line that could not be decoded."""

    reason: str


@dataclass
class NormalizationResult:
    events: List[CanonicalEvent] = field(default_factory=list)
    # Batch position of each accepted event.
    indices: List[int] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)


def strip_nulls(value: Any) -> Any:
    """Drop null-valued keys recursively so absent and null look the same downstream."""
    if isinstance(value, dict):
        return {key: strip_nulls(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [strip_nulls(item) for item in value if item is not None]
    return value


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, bool):
        raise ValueError("timestamp must be an ISO-8601 string or epoch milliseconds")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError("timestamp must be an ISO-8601 string or epoch milliseconds")


def _format_pydantic_error(exc: PydanticValidationError, prefix: str) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "kind")
        path = f"{prefix}.{location}" if location else prefix
        parts.append(f"{path}: {error.get('msg')}")
    return "; ".join(parts)


class EventNormalizer:
    """Turn a raw batch into canonical events plus per-event rejections."""

    def __init__(self, settings: Optional[Settings] = None, scrubber: Optional[SecretScrubber] = None):
        self.settings = settings or get_settings()
        self.scrubber = scrubber or get_secret_scrubber()

    # --- Envelope ----------------------------------------------------------
    def parse_batch(self, body: Union[bytes, str, Sequence[Any]], content_type: Optional[str] = None) -> List[Any]:
        """Decode a request body into raw records.

        Raises ``BatchFormatError`` or ``PayloadTooLargeError`` for problems with
        the batch as a whole. Undecodable NDJSON lines are kept as
        ``MalformedRecord`` entries so they are rejected individually.
        """
        if isinstance(body, (bytes, bytearray)):
            if len(body) > self.settings.max_batch_bytes:
                raise PayloadTooLargeError(
                    "Batch exceeds maximum size",
                    limit=self.settings.max_batch_bytes,
                    received=len(body),
                    limit_type="batch_bytes",
                )
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise BatchFormatError("Request body is not valid UTF-8") from exc

        if isinstance(body, str):
            is_ndjson = bool(content_type and NDJSON_CONTENT_TYPE in content_type)
            records = self._parse_ndjson(body) if is_ndjson else self._parse_json_array(body)
        elif isinstance(body, (list, tuple)):
            records = list(body)
        else:
            raise BatchFormatError(
                "Request body must be an array of events",
                {"hint": f"Send JSON array or NDJSON format ({NDJSON_CONTENT_TYPE})"},
            )

        if not records:
            raise BatchFormatError("Empty event batch", {"hint": "Send at least one event"})
        if len(records) > self.settings.max_batch_events:
            raise PayloadTooLargeError(
                "Batch contains too many events",
                limit=self.settings.max_batch_events,
                received=len(records),
                limit_type="batch_events",
            )
        return records

    @staticmethod
    def _parse_json_array(text: str) -> List[Any]:
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BatchFormatError("Request body is not valid JSON", {"error": str(exc)}) from exc
        if not isinstance(decoded, list):
            raise BatchFormatError(
                "Request body must be an array of events",
                {"hint": f"Send JSON array or NDJSON format ({NDJSON_CONTENT_TYPE})"},
            )
        return decoded

    @staticmethod
    def _parse_ndjson(text: str) -> List[Any]:
        records: List[Any] = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                records.append(MalformedRecord(reason=f"line_{line_number}: Invalid JSON: {exc.msg}"))
        return records

    # --- Events ------------------------------------------------------------
    def normalize(self, raw_events: Sequence[Any]) -> NormalizationResult:
        result = NormalizationResult()
        for index, raw in enumerate(raw_events):
            try:
                result.events.append(self.normalize_event(raw))
                result.indices.append(index)
            except (ValidationError, PayloadTooLargeError) as exc:
                result.rejections.append(Rejection(index=index, reason=exc.message))
        if result.rejections:
            logger.info(
                "Rejected events in batch",
                extra={"rejected": len(result.rejections), "accepted": len(result.events)},
            )
        return result

    def normalize_event(self, raw: Any) -> CanonicalEvent:
        if isinstance(raw, MalformedRecord):
            raise ValidationError(raw.reason)
        if not isinstance(raw, dict):
            raise ValidationError("event must be a JSON object")

        size = len(json.dumps(raw, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
        if size > self.settings.max_event_bytes:
            raise PayloadTooLargeError(
                f"event exceeds {self.settings.max_event_bytes} bytes (got {size})",
                limit=self.settings.max_event_bytes,
                received=size,
                limit_type="event_bytes",
            )

        data: Dict[str, Any] = strip_nulls(raw)
        missing = [name for name in REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValidationError(f"missing required field(s): {', '.join(missing)}")

        envelope: Dict[str, Any] = {}
        for name in ID_FIELDS:
            envelope[name] = self._identifier(data, name)
        for name in OPTIONAL_ID_FIELDS:
            if name in data:
                envelope[name] = self._identifier(data, name)
        for name in OPTIONAL_TEXT_FIELDS:
            if name in data:
                envelope[name] = str(data[name])

        try:
            event_type = EventType(data["event_type"])
        except ValueError:
            raise ValidationError(f"event_type: unsupported value {data['event_type']!r}")
        try:
            envelope["environment"] = Environment(data["environment"])
        except ValueError:
            raise ValidationError(f"environment: unsupported value {data['environment']!r}")
        try:
            envelope["timestamp"] = parse_timestamp(data["timestamp"])
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise ValidationError(f"timestamp: {exc}")

        attributes = data.get("attributes", {})
        if not isinstance(attributes, dict):
            raise ValidationError("attributes must be an object")
        scrubbed = self.scrubber.scrub(attributes)
        attributes = scrubbed.value

        signal = self._signal(attributes.get("signal"), event_type, envelope)
        payload_data = attributes.get(event_type.value, {})
        if not isinstance(payload_data, dict):
            raise ValidationError(f"attributes.{event_type.value} must be an object")

        payload_model = PAYLOAD_MODELS[event_type]
        try:
            payload = payload_model.model_validate({**payload_data, "kind": event_type.value})
        except PydanticValidationError as exc:
            raise ValidationError(_format_pydantic_error(exc, f"attributes.{event_type.value}"))

        return CanonicalEvent(
            **envelope,
            event_type=event_type,
            payload=payload,
            signal=signal,
            scrubbed_patterns=scrubbed.patterns_found,
        )

    @staticmethod
    def _identifier(data: Dict[str, Any], name: str) -> str:
        value = data[name]
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} must be a non-empty string")
        if len(value) > MAX_ID_LENGTH:
            raise ValidationError(f"{name} exceeds {MAX_ID_LENGTH} characters")
        return value

    @staticmethod
    def _signal(raw: Any, event_type: EventType, envelope: Dict[str, Any]) -> Optional[Signal]:
        if raw is None:
            return None
        if event_type != EventType.error:
            raise ValidationError("attributes.signal is only allowed on error events")
        if not isinstance(raw, dict):
            raise ValidationError("attributes.signal must be an object")
        signal_data = {
            "trace_id": envelope["trace_id"],
            "target_span_id": envelope["span_id"],
            "timestamp": envelope["timestamp"],
            **raw,
        }
        # SDKs emit the signal_value / signal_severity spelling
        for wire_name, field_name in SIGNAL_WIRE_ALIASES.items():
            if wire_name in signal_data:
                signal_data.setdefault(field_name, signal_data.pop(wire_name))
        try:
            return Signal.model_validate(signal_data)
        except PydanticValidationError as exc:
            raise ValidationError(_format_pydantic_error(exc, "attributes.signal"))
