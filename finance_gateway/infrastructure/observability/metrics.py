"""Prometheus metrics for sync runs, classification, Plaid calls and webhooks"""

from prometheus_client import Counter, Histogram, Gauge

# Sync metrics
sync_run_counter = Counter(
    "finance_sync_runs_total",
    "Transaction sync runs per access token",
    ["outcome"],  # success | failed
)

sync_change_counter = Counter(
    "finance_sync_transactions_total",
    "Transaction changes applied by sync",
    ["change"],  # added | modified | removed | skipped
)

sync_duration_histogram = Histogram(
    "finance_sync_duration_seconds",
    "Duration of a full sync run for one access token",
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

syncs_in_progress_gauge = Gauge(
    "finance_syncs_in_progress",
    "Sync runs currently holding a credential lock",
)

# Classification metrics
classifier_fallback_counter = Counter(
    "finance_classifier_fallback_total",
    "Classifications that fell back to the keyword classifier",
)

# Plaid API metrics
feed_failures_counter = Counter(
    "plaid_request_failures_total",
    "Failed Plaid API calls",
    ["endpoint"],
)

# Webhook metrics
webhook_counter = Counter(
    "plaid_webhooks_total",
    "Plaid webhooks received",
    ["webhook_type", "webhook_code", "outcome"],  # outcome: handled | ignored | failed
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_sync(outcome: str, added: int = 0, modified: int = 0, removed: int = 0, skipped: int = 0) -> None:
    """Record the outcome and change counts of one sync run"""
    sync_run_counter.labels(outcome=outcome).inc()
    for change, count in (("added", added), ("modified", modified), ("removed", removed), ("skipped", skipped)):
        if count:
            sync_change_counter.labels(change=change).inc(count)
