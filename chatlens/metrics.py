"""
Prometheus metrics for chatlens.

HTTP layer:
- http_requests_total{method, path, status}
- request_latency_seconds{method, path}

Ingestion pipeline:
- ingest_messages_total{result}: processed, invalid, storage_error
- classifications_total{category, source}: source is remote or local
- remote_fallbacks_total{service}: classify or summarize
- llm_request_latency_seconds: wall time of remote LLM calls, failures included

All metrics live in the default prometheus-client registry.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# HTTP
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Pipeline
# =============================================================================

ingest_messages_total = Counter(
    "ingest_messages_total",
    "Messages handled by the ingestion pipeline, by outcome",
    labelnames=["result"]
)

classifications_total = Counter(
    "classifications_total",
    "Messages classified, by category and by which path produced the label",
    labelnames=["category", "source"]
)

remote_fallbacks_total = Counter(
    "remote_fallbacks_total",
    "Remote LLM calls that failed and fell back to local computation",
    labelnames=["service"]
)

llm_request_latency_seconds = Histogram(
    "llm_request_latency_seconds",
    "Remote LLM call latency in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)


# =============================================================================
# Recording helpers
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one HTTP request and observe its latency.

    path should be the route template rather than the raw URL so that
    per-message paths (/messages/{external_id}) share one label value.
    """
    path = path.split("?")[0]
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_ingest_outcome(result: str) -> None:
    ingest_messages_total.labels(result=result).inc()


def record_classification(category: str, source: str) -> None:
    classifications_total.labels(category=category, source=source).inc()


def record_remote_fallback(service: str) -> None:
    remote_fallbacks_total.labels(service=service).inc()


def record_llm_latency(latency_seconds: float) -> None:
    llm_request_latency_seconds.observe(latency_seconds)


def get_metrics() -> bytes:
    """Render the default registry in Prometheus text format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
