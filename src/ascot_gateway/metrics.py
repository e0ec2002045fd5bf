"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "ascot_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "ascot_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DISCOVERY_RESPONSES = Counter(
    "ascot_discovery_responses_total",
    "Device announcements received",
    ["source"],
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "ascot_discovery_errors_total",
    "Device announcements discarded",
    ["reason"],
    registry=_REGISTRY,
)
MANIFEST_REQUESTS = Counter(
    "ascot_manifest_requests_total",
    "Manifest requests by outcome",
    ["result"],
    registry=_REGISTRY,
)
MANIFEST_DURATION = Histogram(
    "ascot_manifest_request_duration_seconds",
    "Time spent fetching a manifest from one address",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
PASS_DURATION = Histogram(
    "ascot_discovery_pass_duration_seconds",
    "Time spent performing discovery passes",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
KNOWN_DEVICES = Gauge(
    "ascot_devices_total",
    "Devices with a manifest after the last discovery pass",
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "ascot_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "ascot_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the gateway metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_discovery_response(source: str) -> None:
    DISCOVERY_RESPONSES.labels(source=source).inc()


def record_discovery_error(reason: str) -> None:
    DISCOVERY_ERRORS.labels(reason=reason).inc()


def observe_manifest_request(result: str, duration_seconds: float) -> None:
    """Record one manifest request against a single address."""

    MANIFEST_REQUESTS.labels(result=result).inc()
    MANIFEST_DURATION.labels(result=result).observe(duration_seconds)


def observe_discovery_pass(result: str, duration_seconds: float) -> None:
    PASS_DURATION.labels(result=result).observe(duration_seconds)


def set_known_devices(count: int) -> None:
    KNOWN_DEVICES.set(count)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
