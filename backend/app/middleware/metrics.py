"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes application-level
counters for coverage scans and opportunity generation.
"""

import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Scan metrics ─────────────────────────────────────────────────────────────

scans_total = Counter(
    "scans_total",
    "Total scan runs",
    ["scan_type", "status"],
)

scan_duration_seconds = Histogram(
    "scan_duration_seconds",
    "Scan run duration in seconds",
    ["scan_type"],
    buckets=(0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0),
)

coverage_scans_total = Counter(
    "coverage_scans_total",
    "Per-trigger coverage scan outcomes",
    ["outcome"],
)

coverage_entries_verified = Counter(
    "coverage_entries_verified",
    "Total coverage entries written by coverage scans",
)

# ── Opportunity metrics ──────────────────────────────────────────────────────

opportunities_created_total = Counter(
    "opportunities_created_total",
    "Total opportunities created",
    ["trigger_class"],
)


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/scans/jobs/SCAN-1A2B3C → /api/scans/jobs/{id}
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and (
            part.startswith("SCAN-")
            or part.startswith("JOB-")
            or part.isdigit()
            or len(part) > 20
        ):
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
