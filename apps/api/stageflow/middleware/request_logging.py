from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from stageflow.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("stageflow.request")


def _record_request(request: Request, status_code: int, elapsed: float, *, raised: bool = False) -> None:
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    fields = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "org_id": getattr(request.state, "org_id", None),
    }
    if raised:
        logger.error("http.error", exc_info=True, extra=fields)
    else:
        logger.info("http.request", extra=fields)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line and one metrics sample per request, ids collapsed in the path."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _record_request(request, 500, time.perf_counter() - started, raised=True)
            raise
        _record_request(request, response.status_code, time.perf_counter() - started)
        return response
