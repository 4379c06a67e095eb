from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

SLOW_REQUEST_MS = 2000


def _actor_user_id(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    user_id = getattr(context, "user_id", None)
    return str(user_id) if user_id else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One `http.request` line and one Prometheus observation per request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        extra = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "actor_user_id": _actor_user_id(request),
        }
        if response.status_code >= 500:
            logger.error("http.request", extra=extra)
        elif duration_ms >= SLOW_REQUEST_MS:
            logger.warning("http.request.slow", extra=extra)
        else:
            logger.info("http.request", extra=extra)
        return response
