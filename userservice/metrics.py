"""Prometheus metrics for the HTTP surface.

Metric objects are registered once at import time on the default registry;
the service middleware only looks up labels and records observations.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

api_hits_total = Counter(
    "api_hits_total",
    "Number of hits to API endpoints",
    labelnames=("route",),
)

api_errors_total = Counter(
    "api_errors_total",
    "Number of API errors (status code >= 500)",
    labelnames=("route",),
)

api_latency_seconds = Histogram(
    "api_latency_seconds",
    "Latency of API requests",
    labelnames=("route",),
)


def observe_request(route: str, status_code: int, elapsed: float) -> None:
    api_hits_total.labels(route=route).inc()
    api_latency_seconds.labels(route=route).observe(elapsed)
    if status_code >= 500:
        api_errors_total.labels(route=route).inc()


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "api_errors_total",
    "api_hits_total",
    "api_latency_seconds",
    "observe_request",
    "render_latest",
]
