"""
middleware/logging.py

Per-request access logging.

Every request gets a request id (echoed back in `X-Request-ID`) and one log
line on completion with method, path, status, latency, client IP and user
agent. Health and documentation paths are skipped to keep the log readable.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Paths that should NOT be logged
_SKIP_LOG_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}


def client_ip(request: Request) -> str:
    """Client address, honouring reverse-proxy headers."""
    for header in ("x-forwarded-for", "x-real-ip"):
        val = request.headers.get(header)
        if val:
            return val.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in _SKIP_LOG_PATHS:
            return await call_next(request)

        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()
        ip = client_ip(request)
        user_agent = request.headers.get("user-agent", "")
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as e:
            latency_ms = round((time.time() - start_time) * 1000, 2)
            logger.error(
                f"{method} {path} | FAILED | {latency_ms}ms | ip: {ip} | "
                f"request_id: {request_id} | error: {e}"
            )
            raise

        latency_ms = round((time.time() - start_time) * 1000, 2)
        status_code = response.status_code
        level = logging.WARNING if status_code >= 400 else logging.INFO
        logger.log(
            level,
            f"{method} {path} | {status_code} | {latency_ms}ms | ip: {ip} | "
            f"ua: {user_agent[:80]} | request_id: {request_id}",
        )
        if latency_ms > 1000:
            logger.warning(f"Slow request: {method} {path} took {latency_ms}ms")

        response.headers["X-Request-ID"] = request_id
        return response
