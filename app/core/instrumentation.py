"""DeskPilot – Instrumentation.

Structured logging setup and Prometheus metrics for the gateway and the
job pipeline.
"""

import logging
import time
from typing import Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from app.integrations.pii_filter import filter_log_record

router = APIRouter(tags=["monitoring"])

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

REQUEST_COUNT = Counter(
    "deskpilot_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "deskpilot_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

JOBS_TOTAL = Counter(
    "deskpilot_jobs_total",
    "Jobs by type and outcome (completed|failed|retried|dead_lettered|dropped)",
    ["job_type", "status"],
)

DELIVERIES_TOTAL = Counter(
    "deskpilot_deliveries_total",
    "Outbound platform deliveries by channel and outcome",
    ["channel", "outcome"],
)

AI_REPLIES_TOTAL = Counter(
    "deskpilot_ai_replies_total",
    "AI-sender replies persisted, by source (llm|fallback)",
    ["source"],
)


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(level: str = "info") -> None:
    """Configure structlog with PII masking."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LOG_LEVELS.get(level.lower(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Configure logging and attach the HTTP metrics middleware."""
    setup_logging(log_level)
    app.include_router(router)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, endpoint=path).observe(duration)

        return response
