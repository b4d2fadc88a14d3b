from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.database import get_db
from ...core.errors import EscalationUnavailable, EventStoreUnavailable
from ...models.analysis import AnalysisJob, AnalysisRequest, EnqueueResult, JobStats
from ...repositories.control_plane_repository import ControlPlaneRepository
from ...repositories.event_store import EventStore
from ...services.escalation_scheduler import EscalationScheduler
from ..dependencies import get_escalation_scheduler, get_store

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"])


@router.get("/stats", response_model=JobStats)
async def get_job_stats(session: AsyncSession = Depends(get_db)) -> JobStats:
    return await ControlPlaneRepository(session).job_stats()


@router.get("/jobs/{job_id}", response_model=AnalysisJob)
async def get_analysis_job(job_id: str, session: AsyncSession = Depends(get_db)) -> AnalysisJob:
    job = await ControlPlaneRepository(session).get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis job not found")
    return job


@router.post("/{trace_id}", response_model=EnqueueResult, status_code=status.HTTP_202_ACCEPTED)
async def request_analysis(
    trace_id: str,
    payload: Optional[AnalysisRequest] = None,
    store: EventStore = Depends(get_store),
    scheduler: EscalationScheduler = Depends(get_escalation_scheduler),
) -> EnqueueResult:
    """Explicitly queue deep analysis for a trace; repeats while a job is pending return that job."""
    payload = payload or AnalysisRequest()
    if not payload.layers:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one layer is required")
    try:
        events = store.query(trace_id)
    except EventStoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
    if not events:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trace not found")

    try:
        return await scheduler.request(
            trace_id,
            payload.layers,
            tenant_id=events[0].tenant_id,
            project_id=events[0].project_id,
            span_id=payload.span_id,
        )
    except EscalationUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
