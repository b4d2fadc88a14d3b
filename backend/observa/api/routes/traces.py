from fastapi import APIRouter, Depends, HTTPException, status

from ...core.errors import EventStoreUnavailable
from ...models.trace import Trace
from ...services.trace_query_service import TraceQueryService
from ..dependencies import get_trace_query_service

router = APIRouter(prefix="/api/v1/traces", tags=["traces"])


@router.get("/{trace_id}", response_model=Trace)
def get_trace(
    trace_id: str,
    service: TraceQueryService = Depends(get_trace_query_service),
) -> Trace:
    try:
        trace = service.get_trace(trace_id)
    except EventStoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
    if trace is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trace not found")
    return trace
