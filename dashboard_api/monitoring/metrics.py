"""Métricas Prometheus del dashboard.

Nombres estables (dashboards/alertas dependen de ellos):
- dashboard_http_requests_total{method,route,status}
- dashboard_http_request_duration_seconds{method,route}
- dashboard_rate_limit_hits_total{kind}   kind: denied | degraded
- dashboard_cache_events_total{event}     event: hit | miss | error | invalidate
- dashboard_auth_events_total{outcome}
"""

from __future__ import annotations

from typing import Tuple

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

HTTP_REQUESTS = Counter(
    "dashboard_http_requests_total",
    "Total HTTP requests handled by the pipeline",
    ["method", "route", "status"],
)
HTTP_REQUEST_DURATION = Histogram(
    "dashboard_http_request_duration_seconds",
    "Request duration in seconds",
    ["method", "route"],
)
RATE_LIMIT_HITS = Counter(
    "dashboard_rate_limit_hits_total",
    "Rate limiter denials and degraded (fail-open) checks",
    ["kind"],
)
CACHE_EVENTS = Counter(
    "dashboard_cache_events_total",
    "Cache hits, misses, errors and invalidations",
    ["event"],
)
AUTH_EVENTS = Counter(
    "dashboard_auth_events_total",
    "Authentication and authorization outcomes",
    ["outcome"],
)


def record_request(method: str, route: str, status: int, duration_seconds: float) -> None:
    HTTP_REQUESTS.labels(method=method, route=route, status=str(status)).inc()
    HTTP_REQUEST_DURATION.labels(method=method, route=route).observe(duration_seconds)


def render_latest() -> Tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
