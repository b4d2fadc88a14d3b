import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

try:  # pragma: no cover - optional dependency
    from sentry_sdk import init as sentry_init  # type: ignore[import]
    from sentry_sdk.integrations.fastapi import FastApiIntegration  # type: ignore[import]
except ImportError:  # pragma: no cover
    sentry_init = None
    FastApiIntegration = None

from .api.routes import analysis, events, traces
from .core.config import Settings, get_settings
from .core.database import AsyncSessionLocal
from .logging_utils import setup_logging
from .middleware.logging_middleware import RequestLoggingMiddleware
from .repositories.event_store import get_event_store
from .services.analysis_worker import AnalysisWorker, AnalysisWorkerPool, sweep_analysis_jobs
from .tasks.analysis_tasks import build_scoring_client, dispatch_analysis_job, set_inline_pool

logger = logging.getLogger(__name__)


async def _sweep_periodically(settings: Settings) -> None:
    while True:
        await asyncio.sleep(settings.analysis_sweep_interval_seconds)
        try:
            await sweep_analysis_jobs(AsyncSessionLocal, dispatch_analysis_job, settings)
        except Exception:
            logger.warning("Analysis job sweep failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if not settings.run_tasks_inline:
        yield
        return

    scoring_client = build_scoring_client()
    worker = AnalysisWorker(AsyncSessionLocal, get_event_store(), scoring_client, settings)
    pool = AnalysisWorkerPool(worker, settings.analysis_worker_concurrency)
    await pool.start()
    set_inline_pool(pool)
    sweeper = asyncio.create_task(_sweep_periodically(settings))
    app.state.analysis_pool = pool
    try:
        yield
    finally:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        set_inline_pool(None)
        await pool.stop()
        if scoring_client is not None:
            await scoring_client.aclose()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings)
    if settings.sentry_dsn and sentry_init and FastApiIntegration:
        sentry_init(
            dsn=settings.sentry_dsn,
            integrations=[FastApiIntegration()],
            environment=settings.environment,
            traces_sample_rate=0.2,
        )

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(events.router)
    app.include_router(traces.router)
    app.include_router(analysis.router)

    @app.get("/health")
    async def health():
        store_ok = get_event_store().ping()
        return {"status": "ok" if store_ok else "degraded", "event_store": store_ok}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
