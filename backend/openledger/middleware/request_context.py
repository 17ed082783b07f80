"""
Request context middleware.

Every request gets a request id: the caller's X-Request-ID when it is a
short token of letters, digits, '.', '_' or '-', otherwise a fresh one. The
id lives in a ContextVar for the duration of the request, so pipeline stage
logs emitted while serving it carry the same id as the access log line.

Access log level follows the outcome: scrapes and health checks (/metrics, /api/health) at
DEBUG, 5xx at ERROR, other 4xx (a rejected run, a bad receipts window) at
WARNING, everything else at INFO.
"""

import logging
import re
import time
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/metrics", "/api/health"})

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return _request_id_var.get()


def resolve_request_id(header_value: str | None) -> str:
    """The caller's id when it is safe to echo into logs and headers, else a new one."""
    if header_value and _REQUEST_ID_RE.match(header_value):
        return header_value
    return uuid4().hex


def access_log_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = _request_id_var.set(request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            _request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.log(
            access_log_level(request.url.path, response.status_code),
            "%s %s %s %.0fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"duration_ms": duration_ms, "request_id": request_id},
        )
        return response
