"""Request middleware for the Memory API.

One pass per request records the audit line (method, route, status, client,
user, latency) and the Prometheus request counters.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .metrics import record_request_metric

audit_logger = logging.getLogger("audit")


def _route_label(request: Request) -> str:
    """Route template (``/v1/entities/{entity_id}``) so ids don't explode label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        route = _route_label(request)

        record_request_metric(
            method=request.method,
            path=route,
            status=response.status_code,
            duration_seconds=elapsed,
        )
        # Bodies are not read here; only a query-string user_id is visible
        audit_logger.info(
            "method=%s path=%s route=%s status=%d ip=%s user=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            route,
            response.status_code,
            request.client.host if request.client else "unknown",
            request.query_params.get("user_id", "-"),
            elapsed * 1000.0,
        )
        return response
