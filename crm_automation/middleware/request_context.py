from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from crm_automation.context import CORRELATION_HEADER, reset_correlation_id, set_correlation_id
from crm_automation.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crm_automation.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the request and records one log line plus metrics per call."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            self._observe(request, status_code, started, failed=True)
            raise
        else:
            self._observe(request, status_code, started, failed=False)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _observe(request: Request, status_code: int, started: float, failed: bool) -> None:
        method = request.method
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=status_code, duration=duration_ms / 1000)
        fields = {"method": method, "path": path, "status_code": status_code, "duration_ms": duration_ms}
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
