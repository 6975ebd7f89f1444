import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from messenger.metrics import record_http_request


# Correlation ids picked up by every log line emitted while they are set
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
connection_id_ctx: ContextVar[Optional[str]] = ContextVar("connection_id", default=None)

_CONTEXT_FIELDS = (("request_id", request_id_ctx), ("connection_id", connection_id_ctx))


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with ISO-8601 UTC timestamps and the current correlation ids."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for field, ctx in _CONTEXT_FIELDS:
            value = ctx.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logging(log_level: str = "INFO"):
    """
    Route every log record, uvicorn's included, through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # request lines come from RequestLoggingMiddleware; the real-time
    # channel logs its own lifecycle from messenger.delivery
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts: server time (ISO-8601)
    - level: log level
    - request_id: unique per request
    - method: HTTP method
    - path: request path
    - status: response status code
    - latency_ms: request processing time in milliseconds

    For POST /messages requests, also includes:
    - message_id: id of the persisted message (when created)
    - receiver_id: requested receiver
    - result: sent, validation_error, not_found, store_error

    WebSocket traffic passes through untouched; the real-time session logs itself.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # exclude /metrics endpoint to avoid self-instrumentation noise
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=_route_template(request),
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            if hasattr(request.state, "delivery_log_data"):
                log_data.update(request.state.delivery_log_data)

            logger = logging.getLogger("messenger.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def _route_template(request: Request) -> str:
    # /messages/42 -> /messages/{peer_id}, keeps metric labels bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def log_delivery_data(
    request: Request,
    message_id: Optional[int] = None,
    receiver_id: Optional[int] = None,
    result: Optional[str] = None,
):
    """
    Attach message-send logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        message_id: Id of the persisted message, if one was created
        receiver_id: Receiver named in the request body
        result: Processing result (sent, validation_error, not_found, store_error)
    """
    fields = {"message_id": message_id, "receiver_id": receiver_id, "result": result}
    request.state.delivery_log_data = {k: v for k, v in fields.items() if v is not None}
