"""FastAPI middleware: request context and logs, tracing, Prometheus metrics."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from hlsingest.core.logging import clear_correlation_id, set_correlation_id
from hlsingest.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from hlsingest.core.tracing import add_span_attributes, create_span, record_exception

request_logger = logging.getLogger("hlsingest.requests")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# /api/v1/assets/<id>[/...] but not /api/v1/assets/stats
_ASSET_PATH = re.compile(r"^(.*/assets/)(?!stats(?:/|$))[^/]+")


def route_template(path: str) -> str:
    """Replace the asset ID in a path with a placeholder."""
    return _ASSET_PATH.sub(r"\1{asset_id}", path)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to the request and logs its outcome.

    The ID comes from the ``X-Correlation-ID`` header when the caller sends
    one and is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        start = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                "Request failed",
                extra={**fields, "duration_ms": _elapsed_ms(start), "error": str(e)},
                exc_info=True,
            )
            raise
        else:
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            request_logger.info(
                "Request completed",
                extra={**fields, "status_code": response.status_code, "duration_ms": _elapsed_ms(start)},
            )
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """Wraps each request in a server span named after its route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        route = route_template(request.url.path)
        with create_span(
            f"{request.method} {route}",
            attributes={"http.method": request.method, "http.route": route, "http.url": str(request.url)},
            kind=trace.SpanKind.SERVER,
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            add_span_attributes({"http.status_code": response.status_code})
            return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request counts, latency and in-flight requests per route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        labels = {"method": request.method, "endpoint": route_template(request.url.path)}
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(**labels)
        in_progress.inc()
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(time.perf_counter() - start)
            HTTP_REQUESTS_TOTAL.labels(**labels, status_code=str(status_code)).inc()
            in_progress.dec()
