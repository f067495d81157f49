from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

provider_requests_total = Counter(
    "tracia_provider_requests_total",
    "Total model invocations by provider and outcome",
    labelnames=["provider", "mode", "status"],
)

provider_request_latency_seconds = Histogram(
    "tracia_provider_request_latency_seconds",
    "Model invocation latency (seconds)",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["provider", "mode"],
)

provider_upstream_retries_total = Counter(
    "tracia_provider_upstream_retries_total",
    "Retried upstream HTTP attempts against a provider",
    labelnames=["provider", "reason"],
)

span_writes_total = Counter(
    "tracia_span_writes_total",
    "Background span write outcomes",
    labelnames=["outcome"],
)

pending_spans = Gauge(
    "tracia_pending_spans",
    "Span writes currently in flight",
)
