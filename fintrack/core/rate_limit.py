"""
In-memory fixed-window rate limiting.

FixedWindowLimiter counts events per key in one-minute windows. It backs both
the HTTP middleware below (credential and webhook routes, per client and
path) and the auth provider's failed sign-in counter (per username).
"""

import os
import time
from typing import Callable, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from fintrack.core.errors import RateLimitError, app_error_handler
from fintrack.core.logging import get_request_id

WINDOW_SECONDS = 60

# category -> POST routes it covers
ROUTE_GROUPS: Dict[str, Tuple[str, ...]] = {
    "auth": ("/api/auth/sign-in", "/api/auth/admin/sign-in", "/api/auth/sign-up"),
    "billing": ("/api/billing/webhook",),
}


def _parse_limit(value: Optional[str]) -> Optional[int]:
    """Positive integer limit, or None (disabled) for 0, blanks and junk."""
    try:
        limit = int(value) if value is not None else 0
    except (TypeError, ValueError):
        return None
    return limit if limit > 0 else None


class FixedWindowLimiter:
    def __init__(self, limit_per_minute: int, time_fn: Callable[[], float]):
        self.limit = limit_per_minute
        self.time_fn = time_fn
        self.windows: Dict[str, Tuple[float, int]] = {}

    def _current(self, key: str) -> Tuple[float, int]:
        now = self.time_fn()
        window_start, count = self.windows.get(key, (now, 0))
        if now - window_start >= WINDOW_SECONDS:
            return now, 0
        return window_start, count

    def allow(self, key: str) -> bool:
        """Consume one slot; False when the window is already full."""
        window_start, count = self._current(key)
        if count >= self.limit:
            self.windows[key] = (window_start, count)
            return False
        self.windows[key] = (window_start, count + 1)
        return True

    def exhausted(self, key: str) -> bool:
        """True when the current window for key is used up (does not consume)."""
        if key not in self.windows:
            return False
        return self._current(key)[1] >= self.limit

    def retry_after(self, key: str) -> int:
        window_start, _ = self._current(key)
        return max(1, int(WINDOW_SECONDS - (self.time_fn() - window_start)))

    def reset(self, key: str) -> None:
        self.windows.pop(key, None)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limits: Dict[str, Optional[int]], time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        clock = time_fn or time.monotonic
        self.limiters: Dict[str, FixedWindowLimiter] = {
            name: FixedWindowLimiter(limit, clock) for name, limit in limits.items() if limit
        }

    @staticmethod
    def _category(request: Request) -> Optional[str]:
        if request.method != "POST":
            return None
        path = request.url.path
        for category, routes in ROUTE_GROUPS.items():
            if path in routes:
                return category
        return None

    @staticmethod
    def _client_key(request: Request, category: str) -> str:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else "unknown")
        return f"{category}:{ip}:{request.url.path}"

    async def dispatch(self, request: Request, call_next):
        category = self._category(request)
        limiter = self.limiters.get(category) if category else None
        if limiter is None:
            return await call_next(request)

        key = self._client_key(request, category)
        if limiter.allow(key):
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        response = await app_error_handler(
            request,
            RateLimitError("Too many requests. Please wait a minute and try again.", request_id=rid),
        )
        response.headers["Retry-After"] = str(limiter.retry_after(key))
        return response


def build_rate_limit_config() -> Dict[str, Optional[int]]:
    return {
        "auth": _parse_limit(os.getenv("AUTH_RATE_LIMIT", "60")),
        "billing": _parse_limit(os.getenv("BILLING_RATE_LIMIT", "120")),
    }
