from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class SignalType(str, Enum):
    threshold = "threshold"
    error = "error"
    spike = "spike"
    loop = "loop"
    mismatch = "mismatch"


class Signal(BaseModel):
    """A deterministic anomaly fact attached to exactly one span."""

    model_config = ConfigDict(frozen=True)

    signal_name: str
    signal_type: SignalType = SignalType.threshold
    severity: Severity
    trace_id: str
    target_span_id: str = Field(description="Span whose behaviour the signal describes")
    value: Union[bool, int, float, str, None] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    layer: str = "layer2"

    @property
    def is_high(self) -> bool:
        return self.severity == Severity.high
