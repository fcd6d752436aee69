"""
Structured JSON logging and the per-request access log.

Every record carries an ISO-8601 ``ts``, ``level``, logger name and, while a
request is in flight, its ``request_id``. The middleware writes a single
"Request completed" record per HTTP request and feeds the HTTP metrics.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatseal.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

WEBHOOK_LOG_ATTR = "webhook_log_data"
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
# Loggers that print full request URLs at INFO; Graph URLs can carry tokens
CHATTY_LOGGERS = ("httpx", "httpcore")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping ts, level and the active request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # Fields named in the format string arrive pre-filled with None
        if not log_record.get("ts"):
            log_record["ts"] = _iso_now()
        log_record["level"] = record.levelname
        req_id = request_id_ctx.get()
        if req_id and "request_id" not in log_record:
            log_record["request_id"] = req_id


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record to stdout as one JSON object per line.

    Uvicorn's own loggers share the handler; its access log is switched off
    because RequestLoggingMiddleware already records each request.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _route_path(request: Request) -> str:
    # Route template keeps /messages/{tenant_id} as a single metrics label
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _completion_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign a request_id, time the request and log its outcome.

    The completion record holds request_id, method, path, status and
    latency_ms, plus whatever log_webhook_data attached for webhook calls.
    """

    access_logger = logging.getLogger("chatseal.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            route_path = _route_path(request)
            if route_path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route_path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            fields: Dict[str, Any] = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, WEBHOOK_LOG_ATTR, {}))
            self.access_logger.log(_completion_level(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    wa_message_id: Optional[str] = None,
    dup: bool = False,
    result: Optional[str] = None,
) -> None:
    """
    Stash webhook outcome fields for the middleware's completion record.

    Args:
        request: The webhook request
        wa_message_id: First message or status id in the delivery, if any
        dup: True when the delivery only repeated already-stored messages
        result: processed, duplicate, ignored, invalid_signature or error
    """
    fields: Dict[str, Any] = {"dup": dup}
    if wa_message_id is not None:
        fields["wa_message_id"] = wa_message_id
    if result is not None:
        fields["result"] = result
    setattr(request.state, WEBHOOK_LOG_ATTR, fields)
