import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from clinic_monitor.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Set per request by the middleware; read by the formatter so engine logs carry it
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("clinic_monitor.requests")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 UTC `ts`, the level name and the active request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname
        request_id = get_request_id()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log line to stdout as JSON.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True
    # One INFO line per provider call otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per request.

    Log keys: ts, level, request_id, method, path, status, latency_ms.
    Routes that reconcile add `conversations` and `degraded_sources`
    via log_reconcile_data().

    A caller-supplied X-Request-ID is reused; otherwise a UUID4 is minted.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "reconcile_log_data", {}))
            request_logger.log(_level_for(response.status_code), "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def log_reconcile_data(request: Request, conversations: int, degraded_sources: Sequence[str] = ()) -> None:
    """Stash reconcile details for the middleware's request log line."""
    request.state.reconcile_log_data = {
        "conversations": conversations,
        "degraded_sources": list(degraded_sources),
    }
