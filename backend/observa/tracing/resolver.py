"""
Parent resolution.

Explicit parent references are trusted when they point at a known span and
do not close a cycle. Every other non-root span is an orphan and is placed
with a nearest-preceding search over a per-attempt, timestamp-ordered index
of LLM-call spans.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..core.errors import ReconstructionAmbiguity
from .spans import SpanGroup

logger = logging.getLogger(__name__)


@dataclass
class ResolvedStructure:
    roots: List[str] = field(default_factory=list)
    parents: Dict[str, Optional[str]] = field(default_factory=dict)
    inferred: Set[str] = field(default_factory=set)
    promoted_root: bool = False


class ParentResolver:
    def __init__(self, groups: Dict[str, SpanGroup]):
        self.groups = groups
        self._ordered = sorted(groups.values(), key=lambda group: group.order_key())

    def resolve(self) -> ResolvedStructure:
        structure = ResolvedStructure()
        if not self.groups:
            return structure

        roots = [group for group in self._ordered if group.is_root_candidate]
        if not roots:
            # Partial event sets still render: the earliest span opens the only attempt.
            roots = [self._ordered[0]]
            structure.promoted_root = True
        structure.roots = [group.span_id for group in roots]
        root_ids = set(structure.roots)
        for span_id in root_ids:
            structure.parents[span_id] = None

        explicit: Dict[str, str] = {}
        for group in self._ordered:
            if group.span_id in root_ids:
                continue
            declared = group.declared_parent
            if declared is not None and declared in self.groups and declared != group.span_id:
                explicit[group.span_id] = declared
        self._break_cycles(explicit)
        structure.parents.update(explicit)

        orphans = [
            group for group in self._ordered
            if group.span_id not in root_ids and group.span_id not in explicit
        ]
        attempt_index = self._build_attempt_index(roots)
        for orphan in orphans:
            parent = self._place_orphan(orphan, roots, attempt_index, structure.parents)
            structure.parents[orphan.span_id] = parent
            structure.inferred.add(orphan.span_id)
            ambiguity = ReconstructionAmbiguity(
                "Parent inferred for span",
                {
                    "span_id": orphan.span_id,
                    "declared_parent": orphan.declared_parent,
                    "resolved_parent": parent,
                },
            )
            logger.debug(ambiguity.message, extra=ambiguity.details)
        return structure

    def _break_cycles(self, explicit: Dict[str, str]) -> None:
        """Drop the latest-starting edge of every cycle; that span becomes an orphan."""
        for group in self._ordered:
            path: List[str] = []
            on_path: Set[str] = set()
            current: Optional[str] = group.span_id
            while current is not None and current in explicit and current not in on_path:
                path.append(current)
                on_path.add(current)
                current = explicit.get(current)
            if current is not None and current in on_path:
                cycle = path[path.index(current):]
                latest = max(cycle, key=lambda span_id: self.groups[span_id].order_key())
                explicit.pop(latest, None)

    def _attempt_for(self, group: SpanGroup, roots: List[SpanGroup]) -> SpanGroup:
        """Latest root starting at or before the span, else the first root."""
        chosen = roots[0]
        for root in roots:
            if root.start_time <= group.start_time:
                chosen = root
            else:
                break
        return chosen

    def _build_attempt_index(self, roots: List[SpanGroup]) -> Dict[str, List[SpanGroup]]:
        """LLM-call spans per attempt root, ordered by start time."""
        index: Dict[str, List[SpanGroup]] = {root.span_id: [] for root in roots}
        for group in self._ordered:
            if group.is_llm:
                index[self._attempt_for(group, roots).span_id].append(group)
        return index

    def _place_orphan(
        self,
        orphan: SpanGroup,
        roots: List[SpanGroup],
        attempt_index: Dict[str, List[SpanGroup]],
        parents: Dict[str, Optional[str]],
    ) -> str:
        root = self._attempt_for(orphan, roots)
        candidates = attempt_index.get(root.span_id, [])
        capabilities = orphan.capabilities
        if capabilities:
            keys = [candidate.start_time for candidate in candidates]
            # Candidates starting after the orphan cannot have invoked it.
            limit = bisect.bisect_right(keys, orphan.start_time)
            for candidate in reversed(candidates[:limit]):
                if candidate.span_id == orphan.span_id:
                    continue
                if not capabilities & candidate.invoked_tools:
                    continue
                if self._is_descendant(candidate.span_id, orphan.span_id, parents):
                    continue
                return candidate.span_id
        return root.span_id

    @staticmethod
    def _is_descendant(span_id: str, ancestor: str, parents: Dict[str, Optional[str]]) -> bool:
        seen: Set[str] = set()
        current: Optional[str] = span_id
        while current is not None and current not in seen:
            if current == ancestor:
                return True
            seen.add(current)
            current = parents.get(current)
        return False


def resolve_parents(groups: Dict[str, SpanGroup]) -> ResolvedStructure:
    return ParentResolver(groups).resolve()
