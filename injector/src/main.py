from __future__ import annotations

import base64
import json
import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from injector.src.config import InjectorConfig, load_config
from injector.src.injector import InjectionDecision, SidecarInjector
from shared.src.logs import configure_logging
from shared.src.settings import parse_bool

APP_VERSION = "0.3.0"
MUTATE_PATH = "/mutate--v1-pod"

REQUEST_COUNT = Counter(
    "telegraf_injector_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "telegraf_injector_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "telegraf_injector_http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
ADMISSION_TOTAL = Counter(
    "telegraf_injector_admission_total",
    "Pod admission reviews by outcome",
    ["result"],
)
ADMISSION_WARNINGS_TOTAL = Counter(
    "telegraf_injector_admission_warnings_total",
    "Advisory warnings produced while building sidecar containers",
)
KNOWN_METRIC_PATHS = {MUTATE_PATH, "/healthz", "/readyz", "/metrics"}
_TRACING_INITIALIZED = False


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = request.url.path if request.url.path in KNOWN_METRIC_PATHS else "other"
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
        return response


def build_admission_response(
    review: dict[str, Any], decision: InjectionDecision | None
) -> dict[str, Any]:
    """Wrap *decision* in an ``AdmissionReview`` response.

    A ``None`` decision (evaluation failed) still admits the pod unchanged.
    """
    admission_request = review.get("request") or {}
    response: dict[str, Any] = {"uid": admission_request.get("uid", ""), "allowed": True}
    if decision is not None and decision.inject and decision.patch:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(decision.patch).encode("utf-8")).decode(
            "ascii"
        )
    if decision is not None and decision.warnings:
        response["warnings"] = list(decision.warnings)
    return {
        "apiVersion": review.get("apiVersion", "admission.k8s.io/v1"),
        "kind": "AdmissionReview",
        "response": response,
    }


def configure_tracing(app: FastAPI, logger: logging.Logger) -> None:
    """Enable OpenTelemetry tracing of admission requests when ``OTEL_ENABLED=true``.

    The OpenTelemetry packages are an optional extra; without them the
    webhook keeps serving and tracing is skipped with a warning.
    """
    global _TRACING_INITIALIZED

    if not parse_bool(os.getenv("OTEL_ENABLED")):
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.fastapi import (
            FastAPIInstrumentor,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
    except ImportError:
        logger.warning(
            "OTEL_ENABLED=true but OpenTelemetry packages are not installed; tracing disabled"
        )
        return

    if not _TRACING_INITIALIZED:
        endpoint_base = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318")
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
            endpoint_base
            if endpoint_base.endswith("/v1/traces")
            else endpoint_base.rstrip("/") + "/v1/traces"
        )

        resource = Resource.create({
            "service.name": os.getenv("OTEL_SERVICE_NAME", "telegraf-sidecar-injector"),
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _TRACING_INITIALIZED = True
        logger.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)

    FastAPIInstrumentor.instrument_app(app)


def create_app(config: InjectorConfig | None = None) -> FastAPI:
    """Create and configure the sidecar injector FastAPI application.

    Endpoints:
        ``POST /mutate--v1-pod`` — Mutating admission webhook for pods.
        ``GET /healthz``         — Liveness probe (always ``200 ok``).
        ``GET /readyz``          — Readiness probe.
        ``GET /metrics``         — Prometheus metrics in text exposition format.

    The webhook is fail-open: a pod that cannot be evaluated is admitted
    without a sidecar rather than blocking pod creation cluster-wide.
    """
    configure_logging()
    config = config or load_config()
    injector = SidecarInjector(config)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting telegraf sidecar injector (image=%s, native_sidecars=%s)",
        config.image,
        config.native_sidecars,
    )

    app = FastAPI(title="telegraf-sidecar-injector", version=APP_VERSION)
    app.state.injector = injector
    app.add_middleware(MetricsMiddleware)
    configure_tracing(app, logger)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.post(MUTATE_PATH)
    def mutate_pod(review: dict[str, Any]) -> dict[str, Any]:
        admission_request = review.get("request") or {}
        pod = admission_request.get("object") or {}
        decision: InjectionDecision | None = None
        try:
            decision = injector.inject(pod)
        except Exception:
            logger.exception(
                "Failed to evaluate pod %s/%s for sidecar injection; admitting unchanged",
                admission_request.get("namespace", ""),
                admission_request.get("name", ""),
            )
            ADMISSION_TOTAL.labels(result="error").inc()
        else:
            ADMISSION_TOTAL.labels(result="injected" if decision.inject else "skipped").inc()
            if decision.warnings:
                ADMISSION_WARNINGS_TOTAL.inc(len(decision.warnings))
        return build_admission_response(review, decision)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> str:
        return "ok"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app
