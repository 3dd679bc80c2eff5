"""
Observability helpers for the control plane API.

- JSON logging with correlation fields (ENABLE_OTEL=1)
- OpenTelemetry tracing via OTLP (env-driven) plus per-handler span helpers
- Prometheus metrics on /metrics and an HTTP middleware recording them

Usage from the FastAPI app:
    from control_plane.otel import setup_otel
    setup_otel(app, service_name="control-plane")

And from handlers:
    with new_span("serve-pod-status") as span:
        with_attributes(span, {"app-name": name})
        ...
        raise ErrPassThroughToClient(span_error(span, err, "unable to get agent"), 500)
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

SERVICE_NAME = "control-plane"

_tracer = trace.get_tracer("control_plane")


# -----------------------
# Tracing
# -----------------------
def init_tracing(service_name: str, version: str) -> bool:
    """
    Initialize OTLP tracing if OTEL_EXPORTER_OTLP_ENDPOINT is set.
    Returns True when a tracer provider was installed.
    """
    endpoint = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "") or "").strip()
    if not endpoint:
        return False

    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    protocol = (os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "") or "").strip().lower()
    if protocol in ("http", "http/protobuf", "http_proto", "http_protobuf"):
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter as OTLPHTTPExporter,
        )

        exporter = OTLPHTTPExporter(endpoint=endpoint)
    else:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter as OTLPGRPCExporter,
        )

        # gRPC endpoint takes host:port
        cleaned = re.sub(r"^https?://", "", endpoint)
        exporter = OTLPGRPCExporter(endpoint=cleaned)

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": version,
            "telemetry.sdk.language": "python",
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return True


class TelemetryError(Exception):
    """Error produced by span_error; str() is '<message>: <cause>'."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(f"{message}: {cause}" if cause is not None else message)


@contextmanager
def new_span(name: str) -> Iterator[Span]:
    with _tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        yield span


def with_attributes(span: Span, attrs: Mapping[str, Any]) -> None:
    for k, v in attrs.items():
        if v is None:
            continue
        if isinstance(v, (str, bool, int, float)):
            span.set_attribute(k, v)
        else:
            span.set_attribute(k, str(v))


def span_error(span: Span, err: Optional[BaseException], message: str) -> TelemetryError:
    """
    Record a failure on the span and return the error to hand to the API error layer.
    """
    out = TelemetryError(message, err)
    span.record_exception(out)
    span.set_status(Status(StatusCode.ERROR, str(out)))
    span.set_attribute("error-message", str(out))
    logging.getLogger("control_plane.telemetry").warning(str(out))
    return out


# -----------------------
# JSON logging
# -----------------------
_CORRELATION_FIELDS = (
    "request_id",
    "trace_id",
    "project_id",
    "cluster_id",
    "path",
    "method",
    "status",
    "duration_ms",
)


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str, version: str) -> None:
        super().__init__()
        self.service = service
        self.version = version

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created))
        base: Dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "version": self.version,
            "msg": record.getMessage(),
        }
        for k in _CORRELATION_FIELDS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, separators=(",", ":"), default=str)


def setup_logging(service: str, version: str, json_logs: bool) -> None:
    root = logging.getLogger()
    if json_logs:
        if not any(isinstance(h.formatter, JsonFormatter) for h in root.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(JsonFormatter(service, version))
            root.handlers = [handler]
    elif not root.handlers:
        logging.basicConfig()
    root.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))


def get_logger(name: str = "control_plane") -> logging.Logger:
    return logging.getLogger(name)


# -----------------------
# Path templating
# -----------------------
_PATH_SUBSTITUTIONS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"^/api/projects/[^/]+/clusters/[^/]+/apps/(revisions|parse|update|apply)$"),
        r"/api/projects/_/clusters/_/apps/\1",
    ),
    (
        re.compile(r"^/api/projects/[^/]+/clusters/[^/]+/apps/[^/]+/(latest|pods|build-settings|rerun-workflow)$"),
        r"/api/projects/_/clusters/_/apps/_/\1",
    ),
    (
        re.compile(r"^/api/projects/[^/]+/clusters/[^/]+/applications/[^/]+/(pr|github-action)$"),
        r"/api/projects/_/clusters/_/applications/_/\1",
    ),
    (
        re.compile(r"^/api/projects/[^/]+/clusters/[^/]+/(addons|default-deployment-target)$"),
        r"/api/projects/_/clusters/_/\1",
    ),
]


def sanitize_path(path: str) -> str:
    """
    Low-cardinality templating of API paths.
    """
    p = path or "/"
    for rx, repl in _PATH_SUBSTITUTIONS:
        if rx.match(p):
            return rx.sub(repl, p)
    if p.startswith("/api/"):
        return re.sub(r"/\d+(?=/|$)", "/_", p)
    return p


# -----------------------
# Metrics registry
# -----------------------
class Metrics:
    def __init__(self, service: str, version: str) -> None:
        self.service = service
        self.version = version
        self.registry = CollectorRegistry()

        self.http_requests_total = Counter(
            "http_requests_total",
            "HTTP requests processed by the control plane API",
            ["path", "method", "status"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["path", "method", "status"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
            registry=self.registry,
        )
        self.ccp_requests_total = Counter(
            "ccp_requests_total",
            "Calls made to the cluster control plane",
            ["method", "code"],
            registry=self.registry,
        )
        self.ccp_request_duration_seconds = Histogram(
            "ccp_request_duration_seconds",
            "Cluster control plane call duration in seconds",
            ["method"],
            registry=self.registry,
        )
        self.rbac_denied_total = Counter(
            "rbac_denied_total",
            "Requests denied by RBAC",
            ["reason"],
            registry=self.registry,
        )
        self.github_pull_requests_total = Counter(
            "github_pull_requests_total",
            "CI wiring requests against GitHub",
            ["result"],
            registry=self.registry,
        )

    def render(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


_METRICS: Optional[Metrics] = None


def metrics() -> Metrics:
    global _METRICS
    if _METRICS is None:
        _METRICS = Metrics(service=SERVICE_NAME, version=os.getenv("CP_VERSION", "0.1.0"))
    return _METRICS


def observe_ccp_call(method: str, code: str, duration: float) -> None:
    m = metrics()
    m.ccp_requests_total.labels(method=method, code=code).inc()
    m.ccp_request_duration_seconds.labels(method=method).observe(max(0.0, duration))


# -----------------------
# FastAPI installer
# -----------------------
def setup_otel(app: Any, service_name: str = SERVICE_NAME, version: str = "0.1.0") -> None:
    """
    Install JSON logging, OTLP tracing, Prometheus metrics + HTTP middleware and /metrics.
    """
    from fastapi import Request, Response

    setup_logging(service_name, version, json_logs=True)
    init_tracing(service_name, version)

    global _METRICS
    _METRICS = Metrics(service=service_name, version=version)
    http_logger = get_logger("control_plane.http")

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        payload, ctype = metrics().render()
        return Response(content=payload, media_type=ctype)

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next: Callable) -> Response:
        t0 = time.perf_counter()
        method = request.method.upper()
        request_id = uuid.uuid4().hex
        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        ptempl = sanitize_path(request.url.path)

        status_code = 500
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = max(0.0, time.perf_counter() - t0)
            if response is not None:
                response.headers.setdefault("x-trace-id", trace_id)
                response.headers.setdefault("x-request-id", request_id)

            m = metrics()
            m.http_requests_total.labels(path=ptempl, method=method, status=str(status_code)).inc()
            m.http_request_duration_seconds.labels(
                path=ptempl, method=method, status=str(status_code)
            ).observe(duration)
            if status_code in (401, 403):
                m.rbac_denied_total.labels(reason=str(status_code)).inc()

            http_logger.info(
                "http",
                extra={
                    "trace_id": trace_id,
                    "request_id": request_id,
                    "project_id": request.path_params.get("project_id"),
                    "cluster_id": request.path_params.get("cluster_id"),
                    "path": ptempl,
                    "method": method,
                    "status": status_code,
                    "duration_ms": int(duration * 1000),
                },
            )


__all__ = [
    "setup_otel",
    "setup_logging",
    "init_tracing",
    "get_logger",
    "sanitize_path",
    "new_span",
    "with_attributes",
    "span_error",
    "TelemetryError",
    "Metrics",
    "metrics",
    "observe_ccp_call",
]
