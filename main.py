"""
Main FastAPI application entry point
"""
import time

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.exceptions import SiteAuditError
from core.logging import get_logger, setup_logging
from core.metrics import get_metrics_response, metrics
from database.session import init_db
from site_audit.api import current_orchestrator
from site_audit.api import router as site_audit_router

setup_logging()
logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [settings.base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request tracking middleware
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Track all HTTP requests for metrics"""
    start_time = time.time()

    # Skip metrics endpoint to avoid recursion
    if request.url.path == "/metrics":
        return await call_next(request)

    response = await call_next(request)

    duration = time.time() - start_time
    metrics.track_request(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
        duration=duration,
    )

    return response


# Exception handlers
@app.exception_handler(SiteAuditError)
async def site_audit_error_handler(request: Request, exc: SiteAuditError):
    """Handle structured site audit errors"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"Site audit error - error_code: {exc.error_code}, details: {exc.details}, path: {request.url.path}")
    metrics.track_error(error_type=exc.error_code, domain="site_audit")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.exception(f"Unexpected error - path: {request.url.path}", exc_info=exc)
    metrics.track_error(error_type=exc.__class__.__name__, domain="app")
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    )


@app.get("/health", tags=["health"])
async def health():
    """Liveness check"""
    orchestrator = current_orchestrator()
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "running_audits": orchestrator.pending_tasks if orchestrator else 0,
    }


# Custom metrics endpoint
@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """Expose metrics for Prometheus scraping"""
    if not settings.prometheus_enabled:
        return JSONResponse(status_code=404, content={"error": "Metrics not enabled"})

    metrics_data, content_type = get_metrics_response()
    return Response(content=metrics_data, media_type=content_type)


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    init_db()
    logger.info(f"Starting SiteAudit version={settings.app_version} environment={settings.environment}")


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Let running audits finish before the loop goes away"""
    orchestrator = current_orchestrator()
    if orchestrator is not None:
        still_running = await orchestrator.wait_for_background(timeout=SHUTDOWN_GRACE_SECONDS)
        if still_running:
            logger.warning(f"Shutting down with {still_running} audit(s) still running")
    logger.info("Shutting down SiteAudit")


app.include_router(site_audit_router)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
