"""
Custom middleware for the FacePay engine.
"""

import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from facepay.observability import record_http_metrics

logger = structlog.get_logger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request/response logging with correlation ID support.
    """

    def __init__(self, app, exclude_paths: Optional[set] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or {"/healthz", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        correlation_id = request.headers.get("X-Call-ID", f"req_{int(time.time() * 1000)}")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        start_time = time.time()
        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("User-Agent", "unknown"),
            correlation_id=correlation_id
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                process_time_ms=round(process_time * 1000, 2),
                correlation_id=correlation_id
            )

            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "correlation_id": correlation_id,
                    "timestamp": datetime.utcnow().isoformat()
                },
                headers={"X-Call-ID": correlation_id}
            )

        process_time = time.time() - start_time
        logger.info(
            "Request completed",
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
            correlation_id=correlation_id
        )

        response.headers["X-Call-ID"] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to responses.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers.update({
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Content-Security-Policy": "default-src 'self'",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store"
        })

        return response


class RequestMetrics:
    """In-process request counters exposed on /metrics."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.request_count = 0
        self.error_count = 0
        self.total_processing_time = 0.0

    def observe(self, status_code: int, processing_time: float) -> None:
        self.request_count += 1
        self.total_processing_time += processing_time
        if status_code >= 400:
            self.error_count += 1

    def snapshot(self) -> Dict[str, Any]:
        avg_processing_time = (
            self.total_processing_time / self.request_count
            if self.request_count > 0 else 0
        )

        return {
            "total_requests": self.request_count,
            "error_count": self.error_count,
            "error_rate": self.error_count / self.request_count if self.request_count > 0 else 0,
            "avg_processing_time_ms": round(avg_processing_time * 1000, 2)
        }


# Shared by the middleware and the /metrics endpoint
request_metrics = RequestMetrics()


def get_metrics() -> Dict[str, Any]:
    """Get current application metrics."""
    return request_metrics.snapshot()


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect basic metrics about requests.
    """

    def __init__(self, app, store: Optional[RequestMetrics] = None):
        super().__init__(app)
        self.store = store or request_metrics

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            processing_time = time.time() - start_time
            self.store.observe(status_code, processing_time)
            record_http_metrics(request.method, request.url.path, status_code, processing_time)


class RateLimitState:
    """
    Sliding-window request log per client.

    Passed into the middleware so tests and multiple apps never share a
    window by accident.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._last_purge = clock()

    def hit(self, client_id: str) -> bool:
        """
        Record a request if the client is under its limit.

        Returns:
            True if the request is allowed
        """
        now = self.clock()
        if now - self._last_purge >= self.window_seconds:
            self._purge(now)

        window = self._requests.setdefault(client_id, deque())
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

        if len(window) >= self.max_requests:
            return False

        window.append(now)
        return True

    def _purge(self, now: float) -> None:
        """Drop clients whose newest request has left the window."""
        stale = [
            client_id for client_id, window in self._requests.items()
            if not window or now - window[-1] >= self.window_seconds
        ]
        for client_id in stale:
            del self._requests[client_id]
        self._last_purge = now

    def count(self, client_id: str) -> int:
        return len(self._requests.get(client_id, ()))

    def reset(self) -> None:
        self._requests.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple rate limiting middleware (in-memory, for basic protection).
    """

    def __init__(self, app, state: Optional[RateLimitState] = None):
        super().__init__(app)
        self.state = state or RateLimitState()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        client_ip = request.client.host if request.client else "unknown"

        if not self.state.hit(client_ip):
            logger.warning(
                "Rate limit exceeded",
                client_ip=client_ip,
                request_count=self.state.count(client_ip),
                max_requests=self.state.max_requests
            )

            return JSONResponse(
                status_code=429,
                content={
                    "error": "RateLimitExceeded",
                    "message": (
                        f"Too many requests. Limit: {self.state.max_requests} "
                        f"per {self.state.window_seconds} seconds"
                    ),
                    "correlation_id": request.headers.get("X-Call-ID", "unknown"),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        return await call_next(request)
