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

from anonrelay.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Paths served to scrapers and health checks; recorded at debug level only
QUIET_PATHS = {"/metrics", "/health/live", "/health/ready"}

# Request id of the HTTP request (or polled update) being handled
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("anonrelay.requests")


class RelayJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter used by the web app and the polling runner.

    Every record carries ts (ISO-8601, UTC, millisecond precision), level and,
    while a request is being handled, its request_id.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault(
            'ts',
            datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
        )
        log_record['level'] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route all logging (ours and uvicorn's) through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RelayJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    # urllib3 logs full request URLs, which contain the bot token
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root


def _level_for(path: str, status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    if path in QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: ts, level, request_id, method, path, status, latency_ms, plus
    source and result for webhook requests (see log_webhook_data).
    An incoming X-Request-ID is reused so ids can be followed across hops.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            latency = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, latency)

            fields = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }
            request_logger.log(_level_for(path, response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, source: str, result: Optional[str] = None) -> None:
    """
    Attach webhook fields to the request log line written by the middleware.

    Args:
        request: FastAPI request object
        source: Webhook that received the event ("relay" or "telegram")
        result: Routing outcome or rejection reason
    """
    data = {"source": source}
    if result is not None:
        data["result"] = result
    request.state.webhook_log_data = data
