# relaybridge/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# Optional import, Sentry is an extra
try:
    import sentry_sdk
    _HAS_SENTRY = True
except ImportError:
    _HAS_SENTRY = False

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "relay-bridge", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
        else:
            fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN and _HAS_SENTRY:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
INDEX_QUERIES = Counter(
    "relay_index_queries_total",
    "Index queries by endpoint and outcome",
    ["endpoint", "outcome"],
)

CIRCUIT_OPEN = Gauge(
    "relay_index_circuit_open",
    "1 while the index circuit breaker is open",
)

CIRCUIT_TRIPS = Counter(
    "relay_index_circuit_trips_total",
    "Times the index circuit breaker opened",
)

RECORDS = Counter(
    "relay_records_total",
    "Request records seen by the pipeline",
    ["outcome"],
)

DISPATCH_LATENCY = Histogram(
    "relay_dispatch_latency_seconds",
    "Time spent executing a request",
    ["kind"],
)

PUBLISHED = Counter(
    "relay_published_total",
    "Ledger writes for responses",
    ["kind", "outcome"],
)

COMPANION_SUBSCRIBED = Gauge(
    "relay_companion_subscribed",
    "1 while the companion subscription is active",
)


# --- Helper wrappers (never crash the bridge)
def inc_index_query(endpoint: str, outcome: str):
    try:
        INDEX_QUERIES.labels(endpoint=endpoint, outcome=outcome).inc()
    except Exception:
        pass


def set_circuit_open(is_open: bool):
    try:
        CIRCUIT_OPEN.set(1 if is_open else 0)
        if is_open:
            CIRCUIT_TRIPS.inc()
    except Exception:
        pass


def inc_record(outcome: str):
    try:
        RECORDS.labels(outcome=outcome).inc()
    except Exception:
        pass


def observe_dispatch(start_ts: float, kind: str):
    try:
        DISPATCH_LATENCY.labels(kind=kind).observe(time.time() - start_ts)
    except Exception:
        pass


def inc_published(kind: str, outcome: str):
    try:
        PUBLISHED.labels(kind=kind, outcome=outcome).inc()
    except Exception:
        pass


def set_companion_subscribed(active: bool):
    try:
        COMPANION_SUBSCRIBED.set(1 if active else 0)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
