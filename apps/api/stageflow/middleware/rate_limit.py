"""Token buckets for mutating API calls, one per (caller, route group)."""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from stageflow.context import get_correlation_id
from stageflow.core.auth import ANONYMOUS_SUBJECT, bearer_claims
from stageflow.core.config import get_settings

MUTATING_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})
WINDOW_SECONDS = 60

logger = logging.getLogger("stageflow.request")


@dataclass
class Bucket:
    tokens: float
    refilled_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class MutationRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], Bucket] = {}

    def consume(self, subject: str, route_group: str, per_minute: int) -> RateDecision:
        if per_minute <= 0:
            return RateDecision(allowed=False, retry_after=WINDOW_SECONDS)

        rate = per_minute / WINDOW_SECONDS
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault(
                (subject, route_group),
                Bucket(tokens=float(per_minute), refilled_at=now),
            )
            bucket.tokens = min(float(per_minute), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens < 1.0:
                return RateDecision(allowed=False, retry_after=max(1, math.ceil((1.0 - bucket.tokens) / rate)))
            bucket.tokens -= 1.0
        return RateDecision(allowed=True)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


rate_limiter = MutationRateLimiter()


def route_group(path: str) -> str:
    """``/api/crm/records/<id>`` becomes ``crm.records``."""
    parts = [part for part in path.split("/") if part][1:3]
    return ".".join(parts) or "api"


def request_subject(request: Request) -> str:
    claims = bearer_claims(request.headers.get("authorization", ""))
    subject = claims.get("sub") if claims else None
    return str(subject) if subject is not None else ANONYMOUS_SUBJECT


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith("/api/")
        ):
            return await call_next(request)

        group = route_group(path)
        decision = rate_limiter.consume(request_subject(request), group, settings.rate_limit_mutations_per_minute)
        if decision.allowed:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        logger.warning(
            "http.rate_limited",
            extra={"method": request.method, "path": path, "route_group": group},
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"route_group": group, "retry_after": decision.retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(decision.retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def reset_rate_limiter() -> None:
    rate_limiter.clear()
