"""
Trace reconstruction package.

Contains:
- Span grouping and event de-duplication
- Parent resolution with orphan placement
- Trace-level input/output attribution
- The reconstructor that assembles attempts and aggregates
"""

from .attribution import Attribution, attribute, clear_duplicate_outputs, same_output
from .reconstructor import TraceReconstructor, build_trace, synthesize_span
from .resolver import ParentResolver, ResolvedStructure, resolve_parents
from .spans import SpanGroup, dedupe, group_by_span, partition_signals

__all__ = [
    "Attribution",
    "ParentResolver",
    "ResolvedStructure",
    "SpanGroup",
    "TraceReconstructor",
    "attribute",
    "build_trace",
    "clear_duplicate_outputs",
    "dedupe",
    "group_by_span",
    "partition_signals",
    "resolve_parents",
    "same_output",
    "synthesize_span",
]
