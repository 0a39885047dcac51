"""FastAPI server for the check pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pulsecheck import __version__
from pulsecheck.api.check_routes import check_router
from pulsecheck.api.monitor_routes import monitor_router
from pulsecheck.config import settings
from pulsecheck.errors import ConflictError, NotFoundError, PulseCheckError, ValidationError
from pulsecheck.health.probe import ProbeExecutor
from pulsecheck.monitors.store import MonitorStore
from pulsecheck.scheduling.claims import ClaimEngine
from pulsecheck.scheduling.reconciler import ResultReconciler

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[PulseCheckError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
]


def wire_state(app: FastAPI, store: MonitorStore, executor: ProbeExecutor | None = None) -> None:
    """Attach the pipeline components to ``app.state``."""
    app.state.store = store
    app.state.claim_engine = ClaimEngine(store)
    app.state.reconciler = ResultReconciler(store)
    app.state.probe_executor = executor or ProbeExecutor.from_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the monitor store on startup."""
    store = MonitorStore(settings.database_path)
    wire_state(app, store)
    logger.info("Monitor store ready: %s", store.db_path)
    yield


# ── Error mapping ────────────────────────────────────────────────────────────


async def _pipeline_error(request: Request, exc: PulseCheckError) -> JSONResponse:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            logger.debug("%s %s -> %d: %s", request.method, request.url.path, status, exc)
            return JSONResponse(status_code=status, content={"error": str(exc)})
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal error. Please try again."})


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request.")
    return JSONResponse(
        status_code=400,
        content={"error": f"{where}: {message}" if where else message},
    )


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal error. Please try again."})


# ── App factory ──────────────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="pulsecheck",
        description="URL uptime monitoring — claim, probe, reconcile",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(PulseCheckError, _pipeline_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _bad_request)
    app.add_exception_handler(Exception, _unhandled)

    app.include_router(check_router, prefix="/api")
    app.include_router(monitor_router, prefix="/api")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
