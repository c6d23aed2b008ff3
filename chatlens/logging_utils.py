"""
Structured JSON logging and the per-request access log.

Every record carries ts, level, name, message and, inside a request, the
request_id. Ingestion routes attach extra keys (external_id, category,
result, count) through log_ingest_data(); the middleware merges them into
the single access-log line it writes when the response is ready.
"""

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

from chatlens.metrics import record_http_request


SERVICE_NAME = "chatlens"
REQUEST_ID_HEADER = "X-Request-ID"
ACCESS_LOGGER = "chatlens.requests"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("urllib3", "sqlalchemy.engine")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a millisecond UTC ts, the level, the service and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
        log_record["level"] = record.levelname
        log_record.setdefault("service", SERVICE_NAME)

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers to one JSON stdout handler.

    uvicorn.access is disabled: RequestLoggingMiddleware writes the access log.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))

    return root


def _route_path(request: Request) -> str:
    """Route template (e.g. /groups/{group_id}/stats) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One access-log line and one metrics sample per HTTP request.

    A caller-supplied X-Request-ID is reused, otherwise a UUID is minted;
    either way it is echoed on the response. Requests to /metrics are
    logged but not counted.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            elapsed = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(request.method, _route_path(request), response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "ingest_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger(ACCESS_LOGGER).log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_ingest_data(
    request: Request,
    external_id: Optional[str] = None,
    category: Optional[str] = None,
    result: Optional[str] = None,
    count: Optional[int] = None,
) -> None:
    """Attach ingestion fields to the request; the middleware adds them to the access log."""
    fields = {"external_id": external_id, "category": category, "result": result, "count": count}
    request.state.ingest_log_data = {key: value for key, value in fields.items() if value is not None}
