from prometheus_client import Counter, Histogram, make_asgi_app
from starlette.middleware.base import BaseHTTPMiddleware
import time

REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Latency of HTTP requests",
    ["path", "method", "status"],
    buckets=[0.005,0.01,0.025,0.05,0.1,0.25,0.5,1,2,5],
)
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["path", "method", "status"],
)

FLAG_TRANSITIONS = Counter(
    "flag_transitions_total",
    "Flag state changes and structural edits actually persisted",
    ["action"],
)
CASCADE_FAILURES = Counter(
    "flag_cascade_failures_total",
    "Dependents that could not be cascade-disabled",
)
AUDIT_WRITE_FAILURES = Counter(
    "flag_audit_write_failures_total",
    "Audit entries that could not be written",
)

class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        resp = await call_next(request)
        latency = time.perf_counter() - start
        # route template keeps label cardinality bounded (/flags/{flag_id})
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        method = request.method
        status = str(resp.status_code)
        REQUEST_LATENCY.labels(path, method, status).observe(latency)
        REQUEST_COUNT.labels(path, method, status).inc()
        return resp

metrics_app = make_asgi_app()
