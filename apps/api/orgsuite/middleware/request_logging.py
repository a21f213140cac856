from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from orgsuite.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("orgsuite.request")

_QUIET_PATHS = {"/health", "/metrics"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # route is only attached to the scope once routing has run
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        if path in _QUIET_PATHS and response.status_code < 400:
            level = logging.DEBUG
        extra: dict[str, object] = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        scope = getattr(request.state, "scope", None)
        if scope is not None:
            if scope.tenant_id:
                extra["tenant_id"] = scope.tenant_id
            if scope.entity_id:
                extra["entity_id"] = scope.entity_id
        logger.log(level, "http.request", extra=extra)
        return response
