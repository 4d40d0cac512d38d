import logging
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger("http")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


def get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "127.0.0.1"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window request limit per client IP, kept in process memory."""

    MAX_TRACKED_CLIENTS = 10_000

    def __init__(self, app: ASGIApp, limit: int, window_seconds: int, exempt_paths: tuple[str, ...] = ("/health",)):
        super().__init__(app)
        self.limit = limit
        self.window_seconds = window_seconds
        self.exempt_paths = exempt_paths
        # client ip -> (window start, hits in window)
        self._windows: dict[str, tuple[float, int]] = {}

    def _allow(self, client_ip: str, now: float) -> bool:
        if len(self._windows) > self.MAX_TRACKED_CLIENTS:
            self._windows = {
                ip: window for ip, window in self._windows.items()
                if now - window[0] < self.window_seconds
            }

        started, hits = self._windows.get(client_ip, (now, 0))
        if now - started >= self.window_seconds:
            started, hits = now, 0
        hits += 1
        self._windows[client_ip] = (started, hits)
        return hits <= self.limit

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self.limit <= 0 or request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = get_client_ip(request)
        if not self._allow(client_ip, time.monotonic()):
            logger.warning("rate_limited", extra={"client_ip": client_ip, "path": request.url.path})
            return JSONResponse(
                status_code=429,
                content={"msg": RATE_LIMIT_MESSAGE},
                headers={"Retry-After": str(self.window_seconds)},
            )
        return await call_next(request)


def install_request_logging(app: FastAPI) -> None:
    """One structured log line per request, plus an X-Request-Id response header."""

    @app.middleware("http")
    async def _request_logging_middleware(request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        start = time.perf_counter()
        status_code = 500
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "http_request",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                },
            )
        response.headers["X-Request-Id"] = request_id
        return response
