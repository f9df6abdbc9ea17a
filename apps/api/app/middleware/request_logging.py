from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request, path: str) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": path,
        "tenant_id": request.headers.get("x-tenant-id"),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log and count every request, tagged with the calling tenant."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = resolve_http_path_label(request)
        fields = _request_fields(request, path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            observe_http_request(method=request.method, path=path, status=500, duration=elapsed)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**fields, "status_code": 500, "duration_ms": round(elapsed * 1000, 2)},
            )
            raise

        elapsed = time.perf_counter() - started
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=elapsed)
        logger.info(
            "http.request",
            extra={**fields, "status_code": response.status_code, "duration_ms": round(elapsed * 1000, 2)},
        )
        return response
