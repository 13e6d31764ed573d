"""
Prometheus metrics for the language server.

Metrics are always recorded; the ``/metrics`` route that exposes them is
only registered when the server runs with ``enable_metrics``.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQ_TOTAL = Counter("wls_requests_total", "Total HTTP requests", ["status"])
REQ_ERRORS = Counter("wls_request_errors_total", "Total HTTP requests answered with an error")
EXTRACTIONS = Counter(
    "wls_extractions_total", "Language extractions by outcome", ["result"]
)
REQ_LATENCY = Histogram("wls_request_duration_seconds", "Request duration seconds")


def record_request(status: int, duration: float) -> None:
    REQ_TOTAL.labels(status=str(status)).inc()
    if status >= 400:
        REQ_ERRORS.inc()
    REQ_LATENCY.observe(duration)


def record_extraction(detected: bool) -> None:
    EXTRACTIONS.labels(result="detected" if detected else "unknown").inc()


def render_metrics():
    """Return the text exposition and its content type."""
    return generate_latest().decode("utf-8"), CONTENT_TYPE_LATEST
