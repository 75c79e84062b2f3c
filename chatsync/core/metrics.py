from __future__ import annotations

import time

from prometheus_client import Counter, Histogram


HTTP_REQUESTS = Counter("http_requests_total", "HTTP requests total", ["method", "path", "status"])
HTTP_REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status"],
    buckets=(0.05, 0.1, 0.2, 0.3, 0.5, 1, 2, 5),
)

LOADER_RUNS = Counter(
    "chatsync_loader_runs_total", "Loader executions", ["loader", "outcome"]
)
LOADER_LATENCY = Histogram(
    "chatsync_loader_duration_seconds",
    "Loader duration in seconds",
    ["loader"],
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1, 2, 5),
)
MESSAGES_SENT = Counter("chatsync_messages_sent_total", "Messages sent", ["type"])
COALESCER_SUPERSEDED = Counter(
    "chatsync_coalescer_superseded_total", "Debounced calls replaced by a newer call", ["name"]
)
FEED_DELIVERIES = Counter(
    "chatsync_feed_deliveries_total", "Change feed callbacks invoked", ["table"]
)
BEST_EFFORT_FAILURES = Counter(
    "chatsync_best_effort_failures_total", "Trailing pipeline steps that failed", ["step"]
)


class observe_loader:
    """Context manager recording one loader run."""

    def __init__(self, loader: str):
        self.loader = loader
        self.start = 0.0

    def __enter__(self):
        self.start = time.time()
        return self

    def __exit__(self, exc_type, exc, tb):
        LOADER_LATENCY.labels(loader=self.loader).observe(time.time() - self.start)
        outcome = "error" if exc_type is not None else "ok"
        LOADER_RUNS.labels(loader=self.loader, outcome=outcome).inc()
        return False


def add_metrics_middleware(app):
    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            status = str(getattr(response, "status_code", 500))
            method = request.method
            path = "/".join([p for p in request.url.path.split("/") if p][:2])
            path = f"/{path}" if path else "/"
            HTTP_REQUESTS.labels(method=method, path=path, status=status).inc()
            HTTP_REQUEST_LATENCY.labels(method=method, path=path, status=status).observe(time.time() - start)
