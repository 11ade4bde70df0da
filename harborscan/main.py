"""
HarborScan Engine - FastAPI Application
=======================================
HTTP surface over the scan orchestrator: start, inspect, stream and cancel
scans, and read persisted results.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from harborscan.config import Settings, get_settings
from harborscan.database import close_db, create_db_engine, create_session_factory, health_check, init_db
from harborscan.exceptions import HarborScanException
from harborscan.log import configure_logging
from harborscan.orchestrator import CancelOutcome, ScanOrchestrator, build_orchestrator
from harborscan.schemas import (
    CancelResponse,
    ErrorResponse,
    HealthCheckResponse,
    JobListResponse,
    ScanJobResponse,
    ScanRequest,
    ScanStartedResponse,
)
from harborscan.store import SqlScanRecordStore

logger = logging.getLogger("harborscan.main")


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    config: Settings = app.state.settings
    configure_logging(config)
    logger.info(f"Starting {config.app_name} v{config.app_version} ({config.environment})...")

    engine = create_db_engine(config=config)
    await init_db(engine)
    logger.info("Database initialized successfully")

    orchestrator = build_orchestrator(config, SqlScanRecordStore(create_session_factory(engine)))
    orchestrator.start()
    app.state.engine = engine
    app.state.orchestrator = orchestrator

    yield

    logger.info("Shutting down API...")
    await orchestrator.shutdown()
    await close_db(engine)


def get_orchestrator(request: Request) -> ScanOrchestrator:
    return request.app.state.orchestrator


# =============================================================================
# Helpers
# =============================================================================

def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _job_response(job) -> ScanJobResponse:
    return ScanJobResponse(**job.to_dict())


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(config: Settings | None = None) -> FastAPI:
    config = config or get_settings()

    app = FastAPI(
        title=config.app_name,
        description="Orchestrates container image security scans and streams their progress",
        version=config.app_version,
        lifespan=lifespan,
    )
    app.state.settings = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HarborScanException)
    async def harborscan_exception_handler(request: Request, exc: HarborScanException):
        if exc.http_status >= 500:
            logger.error(f"{exc.error_code}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": {"errors": json.loads(json.dumps(exc.errors(), default=str))},
                }
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch all unhandled exceptions and return a JSON response"""
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(exc) if config.debug else "An unexpected error occurred",
                    "details": {},
                }
            },
        )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = datetime.now(timezone.utc)

        response = await call_next(request)

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(
            f"{request.method} {request.url.path} "
            f"status={response.status_code} "
            f"duration={duration:.3f}s "
            f"request_id={request_id}"
        )
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", response_model=HealthCheckResponse)
    async def health(request: Request):
        status = "healthy"
        engine = getattr(request.app.state, "engine", None)
        if engine is not None:
            db = await health_check(engine)
            status = db["status"]
        orchestrator = getattr(request.app.state, "orchestrator", None)
        active = 0
        if orchestrator is not None:
            active = sum(1 for job in orchestrator.list_jobs() if not job.is_terminal)
        return HealthCheckResponse(
            status=status,
            version=config.app_version,
            timestamp=datetime.now(timezone.utc),
            active_jobs=active,
        )

    # =========================================================================
    # Scan Endpoints
    # =========================================================================

    @app.post(
        "/api/v1/scans",
        status_code=202,
        response_model=ScanStartedResponse,
        responses={422: {"model": ErrorResponse}},
    )
    async def create_scan(
        scan_request: ScanRequest,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ):
        """
        Start a scan. The pipeline runs in the background; follow it via
        /status or /events with the returned request_id.
        """
        started = await orchestrator.start_scan(scan_request)
        return ScanStartedResponse(request_id=started.request_id, scan_id=str(started.scan_id))

    @app.get("/api/v1/scans/jobs", response_model=JobListResponse)
    async def list_jobs(orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
        return JobListResponse(jobs=[_job_response(job) for job in orchestrator.list_jobs()])

    @app.get("/api/v1/scans/records/{scan_id}", responses={404: {"model": ErrorResponse}})
    async def get_scan_record(
        scan_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.get_scan_record(scan_id)

    @app.get(
        "/api/v1/scans/{request_id}/status",
        response_model=ScanJobResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_status(
        request_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ):
        return _job_response(orchestrator.get_job(request_id))

    @app.get("/api/v1/scans/{request_id}/events")
    async def stream_events(
        request_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ):
        """Server-sent events until the scan reaches a terminal status."""
        orchestrator.get_job(request_id)
        heartbeat = orchestrator.config.sse_heartbeat_seconds

        async def event_stream():
            yield _sse("connected", {"request_id": request_id})
            try:
                async for event in orchestrator.watch(request_id, heartbeat=heartbeat):
                    if event is None:
                        yield ": keepalive\n\n"
                        continue
                    yield _sse("progress", event.to_dict())
            except HarborScanException as e:
                # Headers are already sent; report in-band
                logger.warning(f"Event stream for {request_id} ended: {e.error_code}")
                yield _sse("error", {"error": e.to_dict()})

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/api/v1/scans/{request_id}/cancel", response_model=CancelResponse)
    async def cancel_scan(
        request_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ):
        outcome = await orchestrator.cancel_scan(request_id)
        return CancelResponse(
            request_id=request_id,
            cancelled=outcome is CancelOutcome.CANCELLED,
            outcome=outcome.value,
        )

    return app


app = create_app()


def run() -> None:
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "harborscan.main:app",
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    run()
