from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...core.errors import BatchFormatError, EventStoreUnavailable, PayloadTooLargeError
from ...models.analysis import IngestionResult
from ...services.ingestion_coordinator import IngestionCoordinator
from ..dependencies import get_ingestion_coordinator

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.post("/ingest", response_model=IngestionResult)
async def ingest_events(
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
) -> IngestionResult:
    """Accept a JSON array or NDJSON batch of events; per-event failures come back as rejections."""
    body = await request.body()
    try:
        return await coordinator.ingest(body, request.headers.get("content-type"))
    except BatchFormatError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    except PayloadTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=exc.to_dict()) from exc
    except EventStoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
