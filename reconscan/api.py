# --- Imports ---
from contextlib import asynccontextmanager
from typing import Callable, Optional
import logging

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings, configure_logging, get_settings
from .errors import InvalidTarget, NotCancellable, NotCompleted, NotFound, ScanActive, ScanEngineError
from .manager import ScanManager
from .models import ScanPage, ScanProgress, ScanRecord, ScanStatus, StartScanRequest
from .probes import build_default_registry
from .security import AuditLogger, validate_uuid
from .store import build_store

configure_logging()
logger = logging.getLogger("reconscan.api")

# ============================================================================
# SECURITY: Rate Limiting
# ============================================================================

# Uses IP address for rate limiting by default
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().rate_limit_default],
)

ERROR_STATUS = (
    (InvalidTarget, 400),
    (NotFound, 404),
    (NotCancellable, 409),
    (NotCompleted, 409),
    (ScanActive, 409),
)

router = APIRouter()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Remove server identification
        if "server" in response.headers:
            del response.headers["server"]

        return response


async def scan_error_handler(request: Request, exc: ScanEngineError):
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    logger.error("Unhandled engine error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


def _safe_scan_id(scan_id: str) -> str:
    try:
        return validate_uuid(scan_id, "scan_id")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _manager(request: Request) -> ScanManager:
    return request.app.state.manager


def dispatch_to_celery(scan_id: str) -> str:
    from .tasks import run_scan_task

    task = run_scan_task.delay(scan_id)
    return task.id


def build_manager(settings: Settings) -> ScanManager:
    return ScanManager(
        registry=build_default_registry(timeout=settings.probe_timeout_seconds),
        store=build_store(settings),
        settings=settings,
    )


# --- Endpoints ---

@router.get("/")
async def root(request: Request):
    return {"service": "reconscan", "status": "ok", "probes": len(_manager(request).registry)}


@router.get("/probes")
async def list_probes(request: Request):
    return [
        {
            "name": probe.name,
            "category": probe.category,
            "timeout": probe.timeout,
            "description": probe.description,
        }
        for probe in _manager(request).registry
    ]


@router.post("/scans", status_code=202)
@limiter.limit(get_settings().scan_rate_limit)
async def start_scan(request: Request, body: StartScanRequest):
    """
    Start a scan.

    In inline mode the scan runs on this process's event loop; in celery
    mode the Pending record is created here and a worker runs it.
    """
    manager = _manager(request)
    audit_logger = request.app.state.audit_logger
    try:
        if request.app.state.settings.execution_mode == "celery":
            record = manager.create(body.target_url, body)
            try:
                task_id = request.app.state.dispatcher(record.scan_id)
            except Exception as e:
                logger.error("Failed to queue scan %s: %s", record.scan_id, e)
                manager.mark_failed(record.scan_id, "dispatch failed")
                raise HTTPException(status_code=503, detail="Scan queue unavailable") from e
            logger.info("Scan %s queued as task %s", record.scan_id, task_id)
            scan_id = record.scan_id
        else:
            scan_id = manager.start(body.target_url, body)
    except InvalidTarget as e:
        audit_logger.log_scan_rejected(body.target_url, e.reason, ip_address=_client_ip(request))
        raise

    record = manager.status(scan_id)
    audit_logger.log_scan_started(scan_id, record.target, ip_address=_client_ip(request))
    return {
        "scan_id": scan_id,
        "status": record.status.value,
        "probes_total": record.probes_total,
        "options": body.model_dump(mode="json", exclude={"target_url"}),
    }


@router.get("/scans", response_model=ScanPage)
async def list_scans(
    request: Request,
    status: Optional[ScanStatus] = None,
    target: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """List scans, newest first."""
    return _manager(request).list_scans(status=status, target=target, page=page, limit=limit)


@router.get("/scans/{scan_id}", response_model=ScanRecord)
async def get_scan(request: Request, scan_id: str):
    return _manager(request).status(_safe_scan_id(scan_id))


@router.get("/scans/{scan_id}/progress", response_model=ScanProgress)
async def get_progress(request: Request, scan_id: str):
    return _manager(request).progress(_safe_scan_id(scan_id))


@router.get("/scans/{scan_id}/results", response_model=ScanRecord)
async def get_results(request: Request, scan_id: str):
    """Full record, only once the scan is Completed."""
    return _manager(request).results(_safe_scan_id(scan_id))


@router.post("/scans/{scan_id}/cancel", status_code=202)
async def cancel_scan(request: Request, scan_id: str):
    safe_scan_id = _safe_scan_id(scan_id)
    record = _manager(request).cancel(safe_scan_id)
    request.app.state.audit_logger.log_scan_cancelled(safe_scan_id, ip_address=_client_ip(request))
    return {"scan_id": safe_scan_id, "status": record.status.value, "message": "Cancellation requested"}


@router.delete("/scans/{scan_id}", status_code=204)
async def delete_scan(request: Request, scan_id: str):
    safe_scan_id = _safe_scan_id(scan_id)
    _manager(request).delete(safe_scan_id)
    request.app.state.audit_logger.log_scan_deleted(safe_scan_id, ip_address=_client_ip(request))
    return Response(status_code=204)


@router.get("/scans/{scan_id}/logs")
async def get_logs(request: Request, scan_id: str):
    safe_scan_id = _safe_scan_id(scan_id)
    return {"scan_id": safe_scan_id, "logs": _manager(request).logs(safe_scan_id)}


def create_app(
    manager: Optional[ScanManager] = None,
    settings: Optional[Settings] = None,
    dispatcher: Callable[[str], str] = dispatch_to_celery,
) -> FastAPI:
    settings = settings or get_settings()
    # HTTPS enforcement for CORS origins in production
    settings.check_origins()
    manager = manager or build_manager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("reconscan API starting (%s execution, %d probes)", settings.execution_mode, len(manager.registry))
        yield
        logger.info("Shutting down, cancelling in-process scans")
        await manager.shutdown()

    app = FastAPI(title="reconscan", lifespan=lifespan)
    app.state.manager = manager
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.audit_logger = AuditLogger(settings.audit_log_file)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ScanEngineError, scan_error_handler)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("reconscan.api:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
