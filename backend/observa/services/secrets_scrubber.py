"""
Credential and PII redaction.

Used by the event normalizer on every string attribute before storage, and
by the logging PII filter so the same patterns never reach log sinks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple


@dataclass(frozen=True)
class ScrubPattern:
    name: str
    regex: "re.Pattern[str]"
    replacement: str


DEFAULT_PATTERNS: Tuple[ScrubPattern, ...] = (
    ScrubPattern("openai_key", re.compile(r"sk-[a-zA-Z0-9]{32,}", re.IGNORECASE), "[REDACTED_OPENAI_KEY]"),
    ScrubPattern("api_key_sk", re.compile(r"sk_[a-zA-Z0-9]{32,}", re.IGNORECASE), "[REDACTED_API_KEY]"),
    ScrubPattern("aws_access_key", re.compile(r"AKIA[0-9A-Z]{16}", re.IGNORECASE), "[REDACTED_AWS_KEY]"),
    ScrubPattern(
        "aws_secret_key",
        re.compile(r"aws[_ ]?secret[_ ]?access[_ ]?key[\s:=]+['\"]?[A-Za-z0-9/+=]{40}", re.IGNORECASE),
        "[REDACTED_AWS_SECRET]",
    ),
    ScrubPattern("github_token", re.compile(r"ghp_[a-zA-Z0-9]{36}", re.IGNORECASE), "[REDACTED_GITHUB_TOKEN]"),
    ScrubPattern(
        "bearer_token",
        re.compile(r"bearer[\s:]+['\"]?[A-Za-z0-9._-]{32,}", re.IGNORECASE),
        "[REDACTED_BEARER_TOKEN]",
    ),
    ScrubPattern("email", re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[REDACTED_EMAIL]"),
    ScrubPattern("credit_card", re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[REDACTED_CC]"),
    ScrubPattern("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
)


@dataclass
class ScrubResult:
    value: Any
    patterns_found: List[str] = field(default_factory=list)

    @property
    def scrubbed(self) -> bool:
        return bool(self.patterns_found)


class SecretScrubber:
    """Replace recognised secrets with redaction markers, leaving other text untouched."""

    def __init__(self, patterns: Sequence[ScrubPattern] = DEFAULT_PATTERNS):
        self.patterns = tuple(patterns)

    def scrub_text(self, text: str) -> ScrubResult:
        found: List[str] = []
        result = text
        for pattern in self.patterns:
            result, count = pattern.regex.subn(pattern.replacement, result)
            if count:
                found.append(pattern.name)
        return ScrubResult(value=result, patterns_found=found)

    def scrub(self, value: Any) -> ScrubResult:
        """Recursively scrub strings inside dicts and lists. Keys are left alone."""
        if isinstance(value, str):
            return self.scrub_text(value)
        if isinstance(value, dict):
            found: List[str] = []
            cleaned = {}
            for key, item in value.items():
                inner = self.scrub(item)
                cleaned[key] = inner.value
                found.extend(inner.patterns_found)
            return ScrubResult(value=cleaned, patterns_found=_unique(found))
        if isinstance(value, (list, tuple)):
            found = []
            items = []
            for item in value:
                inner = self.scrub(item)
                items.append(inner.value)
                found.extend(inner.patterns_found)
            return ScrubResult(value=items, patterns_found=_unique(found))
        return ScrubResult(value=value)


def _unique(names: List[str]) -> List[str]:
    return list(dict.fromkeys(names))


_default_scrubber = SecretScrubber()


def get_secret_scrubber() -> SecretScrubber:
    return _default_scrubber
