"""
CardGuard — Observability Layer

Provides:
- Structured JSON logging
- Prometheus metrics
- Request correlation IDs
"""

import logging
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request, Response
from prometheus_client import Counter, Histogram
from pythonjsonlogger import jsonlogger

from cardguard.config import settings

APP_VERSION = "1.0.0"

# ===========================================================================
# Context Variables
# ===========================================================================
REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return REQUEST_ID_CTX.get()


def set_request_id(request_id: str) -> None:
    """Set the request ID in context."""
    REQUEST_ID_CTX.set(request_id)


# ===========================================================================
# Structured Logging
# ===========================================================================
class StructuredLogFormatter(jsonlogger.JsonFormatter):
    """JSON log formatter with request and service context."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        request_id = get_request_id()
        if request_id:
            log_record["request_id"] = request_id

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["env"] = settings.APP_ENV
        log_record["service"] = settings.APP_NAME
        log_record["version"] = APP_VERSION


def setup_logging() -> None:
    """Configure structured JSON logging for the application."""
    if not settings.STRUCTURED_LOGGING_ENABLED:
        logging.basicConfig(level=settings.LOG_LEVEL)
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(StructuredLogFormatter())
    root_logger.addHandler(console_handler)

    for logger_name in ["cardguard", "fastapi", "uvicorn", "sqlalchemy", "httpx"]:
        logging.getLogger(logger_name).setLevel(settings.LOG_LEVEL)

    # SQL echo and per-request client logs are noise at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ===========================================================================
# Prometheus Metrics
# ===========================================================================
class Metrics:
    """Application metrics collector."""

    http_requests_total = Counter(
        "cardguard_http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
    )

    http_request_duration_seconds = Histogram(
        "cardguard_http_request_duration_seconds",
        "HTTP request duration in seconds",
        ["method", "endpoint"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )

    checks_total = Counter(
        "cardguard_checks_total",
        "Card checks classified",
        ["risk"],  # LOW, MEDIUM, HIGH, FROZEN, BLOCKED
    )

    check_duration_seconds = Histogram(
        "cardguard_check_duration_seconds",
        "Classify + persist time for a card check",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5),
    )

    actions_total = Counter(
        "cardguard_actions_total",
        "Operator actions applied",
        ["action"],
    )

    alerts_total = Counter(
        "cardguard_alerts_total",
        "Alert deliveries by channel",
        ["channel", "outcome"],  # log | webhook | email ; sent | failed | skipped
    )

    geolookups_total = Counter(
        "cardguard_geolookups_total",
        "IP geolocation fallback lookups",
        ["outcome"],  # resolved | unresolved | failed
    )


# ===========================================================================
# Middleware for automatic metric collection
# ===========================================================================
async def metrics_middleware(request: Request, call_next) -> Response:
    """Record HTTP request metrics."""
    start_time = time.perf_counter()
    path = request.url.path
    method = request.method
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration = time.perf_counter() - start_time
        Metrics.http_requests_total.labels(
            method=method,
            endpoint=path,
            status=status_code,
        ).inc()
        Metrics.http_request_duration_seconds.labels(
            method=method,
            endpoint=path,
        ).observe(duration)


# ===========================================================================
# Logging utilities
# ===========================================================================
def log_card_checked(
    masked_card: str,
    risk_level: str,
    details: Dict[str, Any],
    duration_ms: float,
) -> None:
    """Log a classification outcome.  Takes the masked number only."""
    logger = logging.getLogger("cardguard.checks")
    logger.info(
        "Card checked",
        extra={
            "card": masked_card,
            "risk_level": risk_level,
            "distance_km": details.get("distance_km"),
            "hours_since_last": details.get("hours_since_last"),
            "duration_ms": round(duration_ms, 2),
        },
    )
    Metrics.checks_total.labels(risk=risk_level).inc()
    Metrics.check_duration_seconds.observe(duration_ms / 1000)


def log_action_applied(masked_card: str, action: str) -> None:
    logger = logging.getLogger("cardguard.actions")
    logger.info("Action applied", extra={"card": masked_card, "action": action})
    Metrics.actions_total.labels(action=action).inc()
