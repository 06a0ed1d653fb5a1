from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque

from fastapi import Request
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import RateLimitedError, error_body

logger = logging.getLogger(__name__)

AUTH_PATHS = {"/auth/login", "/auth/register"}


def _trim_old(events: Deque[datetime], now: datetime, window: timedelta) -> None:
    while events and now - events[0] > window:
        events.popleft()


class SlidingWindowLimiter:
    """Per-key request counter over a sliding time window.

    Keys whose events have all aged out are dropped, at most once per window,
    so the table only holds clients seen recently.
    """

    def __init__(self, limit: int, window: timedelta, clock: Callable[[], datetime] | None = None):
        self.limit = limit
        self.window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._events: defaultdict[str, Deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = self._clock()

    def __len__(self) -> int:
        return len(self._events)

    def _sweep(self, now: datetime) -> None:
        for key in list(self._events):
            log = self._events[key]
            _trim_old(log, now, self.window)
            if not log:
                del self._events[key]
        self._last_sweep = now

    def hit(self, key: str) -> bool:
        """Record a request for ``key``; False when it is over the limit."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep > self.window:
                self._sweep(now)
            log = self._events[key]
            _trim_old(log, now, self.window)
            if len(log) >= self.limit:
                return False
            log.append(now)
            return True


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # first hop is the client when behind one trusted proxy
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def install_rate_limits(app, settings: Settings) -> None:
    window = timedelta(minutes=settings.rate_limit_window_minutes)
    general = SlidingWindowLimiter(settings.rate_limit_general, window)
    auth = SlidingWindowLimiter(settings.rate_limit_auth, window)
    app.state.rate_limiters = {"general": general, "auth": auth}

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        ip = client_ip(request, settings.trust_proxy)
        allowed = general.hit(ip)
        if allowed and request.method == "POST" and request.url.path in AUTH_PATHS:
            allowed = auth.hit(ip)
        if not allowed:
            logger.warning("Rate limit hit for %s on %s", ip, request.url.path)
            return JSONResponse(
                error_body(RateLimitedError.code, "Too many requests from this IP, please try again later."),
                status_code=RateLimitedError.status_code,
            )
        return await call_next(request)
