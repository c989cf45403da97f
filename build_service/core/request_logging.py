"""
Request logging middleware.

One structured line per request with status and time to response start.
An incoming X-Request-Id is reused when it looks sane, so a caller can
correlate its own logs with the build log.
NEVER logs: bearer tokens, request bodies, repository URLs.
"""
import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from build_service.core.metrics import metrics
from build_service.core.request_context import set_request_id

logger = logging.getLogger("buildsvc.request")

REQUEST_ID_HEADER = "X-Request-Id"
QUIET_PATHS = frozenset(["/health"])

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _incoming_request_id(request: Request) -> str | None:
    value = request.headers.get(REQUEST_ID_HEADER, "")
    return value if _REQUEST_ID_RE.match(value) else None


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns the request id, logs the outcome and counts it."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(_incoming_request_id(request) or uuid.uuid4().hex)
        path = request.url.path
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            metrics.record_response(500)
            logger.exception(f"request_error method={request.method} path={path}")
            raise

        # Artifact bodies keep streaming after this point
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        metrics.record_response(response.status_code)

        if path in QUIET_PATHS:
            return response

        status = response.status_code
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        logger.log(
            level,
            "request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status_code": status,
                "duration_ms": duration_ms,
                "client_ip": _client_ip(request),
            },
        )
        return response
