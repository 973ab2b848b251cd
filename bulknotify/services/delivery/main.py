"""HTTP dispatch surface for the bulk notification delivery engine.

All operations share one endpoint selected by `action`, and every call must
carry the internal service credential.
"""

import secrets
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bulknotify.common.config import settings
from bulknotify.common.db import SessionLocal
from bulknotify.common.errors import BulkNotifyError, InvalidRequest, Unauthorized
from bulknotify.common.logging import configure_logging, logger, trace_id_ctx
from bulknotify.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from bulknotify.common.startup import log_startup_config
from bulknotify.common.tracing import instrument_app, setup_tracing
from bulknotify.services.delivery.schemas import DispatchRequest
from bulknotify.services.delivery.service import DeliveryService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "API_KEY", "QUEUE_CHUNK_SIZE", "MAX_ATTEMPTS", "DEFAULT_BATCH_SIZE"],
)
service = DeliveryService(SessionLocal, service_name=settings.service_name)

app = FastAPI(title="Bulk Notification Processor")
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(BulkNotifyError)
async def bulk_notify_error_handler(_: Request, exc: BulkNotifyError):
    if exc.status_code >= 500:
        logger.error("request failed error=%s", exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    """Malformed payloads are an `InvalidRequest`: 400 with the first problem."""

    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"error": "Invalid request"})
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": f"{field}: {message}" if field else message})


def _presented_credential(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :]
    return x_api_key


def require_service_credential(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Reject every caller that does not present the internal service secret."""

    presented = _presented_credential(authorization, x_api_key)
    if not presented or not secrets.compare_digest(presented.encode("utf-8"), settings.api_key.encode("utf-8")):
        raise Unauthorized("Unauthorized")


def dispatch(svc: DeliveryService, req: DispatchRequest):
    """Route one request to the operation named by `req.action`."""

    if req.action == "create_batch":
        result = svc.create_batch(
            req.user_ids,
            notification_type=req.notification_type,
            notification_data=req.notification_data,
            batch_size=req.batch_size,
            created_by=req.created_by,
        )
        return result.model_dump(by_alias=True)
    if req.action == "process_batch":
        return svc.process_batch(batch_id=req.batch_id, batch_size=req.batch_size).model_dump()
    if req.action == "get_status":
        return svc.get_status(req.batch_id).model_dump(mode="json")
    if req.action == "list_batches":
        return {"batches": [b.model_dump(mode="json") for b in svc.list_batches(req.status, req.limit)]}
    if req.action == "enqueue_notification":
        result = svc.enqueue_notification(
            req.user_id,
            notification_type=req.notification_type,
            notification_data=req.notification_data,
        )
        return result.model_dump(by_alias=True)
    raise InvalidRequest("Invalid action")


@app.post("/internal/bulk-notifications", dependencies=[Depends(require_service_credential)])
def bulk_notifications(req: DispatchRequest, x_trace_id: str | None = Header(default=None)):
    """Single dispatch endpoint for create/process/status requests."""

    trace_id_ctx.set(x_trace_id or str(uuid4()))
    logger.info("dispatch action=%s batch_id=%s", req.action, req.batch_id)
    return dispatch(service, req)


@app.get("/internal/bulk-notifications/batches", dependencies=[Depends(require_service_credential)])
def list_batches(status: str | None = None, limit: int = 50):
    """Newest-first batch listing."""

    return {"batches": [b.model_dump(mode="json") for b in service.list_batches(status, limit)]}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
