"""
Escalation from cheap deterministic signals to costly deep analysis.

Enqueueing is advisory on the ingestion path: it runs under a short timeout
and any failure is logged and counted, never raised to the ingestion caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.errors import EscalationUnavailable
from ..models.analysis import EnqueueResult, JobTrigger
from ..models.signals import Signal
from ..repositories.control_plane_repository import ControlPlaneRepository
from ..telemetry.ingestion_metrics import record_escalation

logger = logging.getLogger(__name__)

SAMPLED_LAYERS = ["layer3"]

JobDispatch = Callable[[str], None]


def sample_bucket(trace_id: str) -> float:
    """Stable position of a trace in [0, 1) used for deterministic sampling."""
    digest = hashlib.sha256(trace_id.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / float(0x100000000)


class EscalationScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatch: JobDispatch,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.dispatch = dispatch
        self.settings = settings or get_settings()

    def plan(self, trace_id: str, signals: Sequence[Signal]) -> Optional[tuple]:
        """Decide (layers, trigger, target span) for a trace, or None to skip."""
        high = [signal for signal in signals if signal.is_high]
        if high:
            return list(self.settings.escalation_layers), JobTrigger.high_severity_signal, high[0].target_span_id
        rate = self.settings.analysis_sample_rate
        if rate > 0 and sample_bucket(trace_id) < rate:
            return list(SAMPLED_LAYERS), JobTrigger.sampled, None
        return None

    async def escalate(
        self,
        trace_id: str,
        signals: Sequence[Signal],
        *,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Optional[EnqueueResult]:
        """Enqueue analysis for a trace if its signals warrant it. Never raises."""
        if not self.settings.escalation_enabled:
            return None
        decision = self.plan(trace_id, signals)
        if decision is None:
            return None
        layers, trigger, span_id = decision
        signal_names = sorted({signal.signal_name for signal in signals if signal.is_high})
        try:
            result = await asyncio.wait_for(
                self._enqueue(
                    trace_id,
                    layers,
                    trigger,
                    tenant_id=tenant_id,
                    project_id=project_id,
                    span_id=span_id,
                    signal_names=signal_names,
                ),
                timeout=self.settings.escalation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            record_escalation("timeout")
            logger.warning(
                "Escalation enqueue timed out",
                extra={"trace_id": trace_id, "timeout": self.settings.escalation_timeout_seconds},
            )
            return None
        except Exception as exc:
            error = EscalationUnavailable("Escalation enqueue failed", {"trace_id": trace_id, "error": str(exc)})
            record_escalation("unavailable")
            logger.warning(error.message, extra={**error.details, "error_code": error.code}, exc_info=True)
            return None
        record_escalation("enqueued" if result.created else "duplicate")
        return result

    async def request(
        self,
        trace_id: str,
        layers: Iterable[str],
        *,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
        span_id: Optional[str] = None,
    ) -> EnqueueResult:
        """Explicit analysis request. Failures surface as ``EscalationUnavailable``."""
        try:
            result = await self._enqueue(
                trace_id,
                list(layers),
                JobTrigger.explicit_request,
                tenant_id=tenant_id,
                project_id=project_id,
                span_id=span_id,
                signal_names=[],
            )
        except Exception as exc:
            record_escalation("unavailable")
            raise EscalationUnavailable("Analysis queue unavailable", {"trace_id": trace_id, "error": str(exc)}) from exc
        record_escalation("enqueued" if result.created else "duplicate")
        return result

    async def _enqueue(
        self,
        trace_id: str,
        layers: List[str],
        trigger: JobTrigger,
        *,
        tenant_id: Optional[str],
        project_id: Optional[str],
        span_id: Optional[str],
        signal_names: List[str],
    ) -> EnqueueResult:
        async with self.session_factory() as session:
            repo = ControlPlaneRepository(session)
            result = await repo.enqueue_job(
                trace_id,
                layers,
                trigger,
                tenant_id=tenant_id,
                project_id=project_id,
                span_id=span_id,
                signal_names=signal_names,
                max_attempts=self.settings.analysis_max_attempts,
            )
        if result.created:
            # Broker publishes block; keep them off the event loop so wait_for can bound them.
            await asyncio.to_thread(self.dispatch, result.job_id)
            logger.info(
                "Analysis job enqueued",
                extra={"trace_id": trace_id, "job_id": result.job_id, "layers": layers, "trigger": trigger.value},
            )
        return result
