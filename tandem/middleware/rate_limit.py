"""Simple in-memory sliding-window rate limiter.

Two windows per client: ``rate_limit_per_minute`` over 60 seconds, and
``rate_limit_burst`` over one second so a device stuck in a retry loop
cannot spend its whole minute at once.

Sufficient for single-instance deployments and local development; several
API instances would need a shared counter store.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tandem.config import Settings, get_settings

EXEMPT_PATHS: set[str] = {"/health"}


class SlidingWindowLimiter:
    """Per-key request log checked against a minute window and a burst window."""

    def __init__(
        self,
        per_minute: int,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_minute = per_minute
        self.burst = burst
        self._window_seconds = 60.0
        self._burst_seconds = 1.0
        self._clock = clock
        # key -> list of timestamps
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup(self, key: str, now: float) -> list[float]:
        cutoff = now - self._window_seconds
        hits = [t for t in self._requests[key] if t > cutoff]
        self._requests[key] = hits
        return hits

    def hit(self, key: str) -> tuple[bool, int]:
        """Record a request for ``key`` if allowed.

        Returns:
            ``(allowed, retry_after_seconds)``.  ``retry_after`` is 0 when
            allowed.
        """
        now = self._clock()
        hits = self._cleanup(key, now)

        if len(hits) >= self.per_minute:
            return False, max(int(self._window_seconds - (now - hits[0])), 1)

        recent = [t for t in hits if t > now - self._burst_seconds]
        if self.burst > 0 and len(recent) >= self.burst:
            return False, 1

        hits.append(now)
        return True, 0

    def remaining(self, key: str) -> int:
        return max(self.per_minute - len(self._requests[key]), 0)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client rate limiter; keyed by IP."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._limiter = SlidingWindowLimiter(s.rate_limit_per_minute, s.rate_limit_burst)

    def _client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        ip = self._client_ip(request)
        allowed, retry_after = self._limiter.hit(ip)
        if not allowed:
            return Response(
                content='{"detail":"Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)

        # Inform clients of their remaining budget
        response.headers["X-RateLimit-Limit"] = str(self._limiter.per_minute)
        response.headers["X-RateLimit-Remaining"] = str(self._limiter.remaining(ip))

        return response
