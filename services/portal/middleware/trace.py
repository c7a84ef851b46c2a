"""
Trace middleware for request-scoped correlation IDs and HTTP metrics.
"""

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from services.shared.logging import trace_id_var
from services.shared.metrics import http_request_duration_seconds, http_requests_total

logger = logging.getLogger("portal.http")

_NUMERIC_ID_RE = re.compile(r"/\d+(?=/|$)")


def normalize_path(path: str) -> str:
    """
    Replace numeric IDs with a placeholder to keep label cardinality bounded.

        /api/portal/alert-rules/42 -> /api/portal/alert-rules/{id}
    """
    return _NUMERIC_ID_RE.sub("/{id}", path)


class TraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
        token = trace_id_var.set(trace_id)
        request.state.trace_id = trace_id
        started = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed = time.monotonic() - started
            status_code = getattr(response, "status_code", 500)
            path_template = normalize_path(request.url.path)
            labels = {
                "method": request.method,
                "path_template": path_template,
                "status_code": str(status_code),
            }
            http_request_duration_seconds.labels(**labels).observe(elapsed)
            http_requests_total.labels(**labels).inc()

            logger.info(
                "http_request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "elapsed_ms": round(elapsed * 1000, 1),
                },
            )
            trace_id_var.reset(token)
            if response is not None:
                response.headers["X-Trace-ID"] = trace_id
