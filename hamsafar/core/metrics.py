"""Prometheus metrics for the dispatch core."""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("hamsafar", "Hamsafar dispatch core info")
APP_INFO.info({"version": "1.0.0", "name": "hamsafar"})

UPSTREAM_CALLS = Counter(
    "upstream_calls_total",
    "Upstream generation calls issued",
    ["outcome"],  # success | throttled | error
)

DISPATCH_RESULTS = Counter(
    "dispatch_results_total",
    "Terminal outcomes delivered to callers",
    ["kind", "status"],  # kind: reply | summary; status: success | ErrorKind value
)

THROTTLE_RETRIES = Counter(
    "throttle_retries_total",
    "Backoff sleeps taken after upstream throttling",
)

ADMISSION_WAIT = Histogram(
    "admission_wait_seconds",
    "Time spent waiting for a token before an upstream call",
    buckets=[0, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

QUEUE_DEPTH = Gauge(
    "dispatch_queue_depth",
    "Requests accepted but not yet resolved",
)


def metrics_text() -> bytes:
    """Prometheus exposition text for a /metrics surface."""
    return generate_latest()
