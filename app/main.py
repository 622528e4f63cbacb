import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError

from app.api.v1.admin import router as admin_router
from app.api.v1.auth import router as auth_router
from app.api.v1.bookings import router as bookings_router
from app.api.v1.caregiver import router as caregiver_router
from app.api.v1.payments import router as payments_router
from app.core.exceptions import (
    DomainError,
    domain_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.core.logging import setup_logging
from app.core.metrics import REQUEST_COUNT, REQUEST_LATENCY, render_metrics
from app.core.request_context import request_id_ctx_var

setup_logging()
logger = logging.getLogger("app.request")

app = FastAPI(title="Elder Daycare Booking API", version="0.1.0")
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(DomainError, domain_exception_handler)

for router in (auth_router, bookings_router, admin_router, caregiver_router, payments_router):
    app.include_router(router)


def _route_template(request: Request) -> str:
    # Label by route template so booking uuids stay out of metric labels.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def _observe(request: Request, status_code: int, started: float) -> None:
    elapsed = time.perf_counter() - started
    path = _route_template(request)
    REQUEST_COUNT.labels(method=request.method, path=path, status_code=status_code).inc()
    REQUEST_LATENCY.labels(method=request.method, path=path).observe(elapsed)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_completed method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        path,
        status_code,
        elapsed * 1000,
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    token = request_id_ctx_var.set(request_id)
    started = time.perf_counter()
    try:
        try:
            response = await call_next(request)
        except Exception:
            _observe(request, 500, started)
            logger.exception("request_failed method=%s path=%s", request.method, request.url.path)
            raise
        _observe(request, response.status_code, started)
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        request_id_ctx_var.reset(token)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "daycare-booking"}


@app.get("/metrics", tags=["observability"])
def metrics() -> Response:
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
