"""
Track results-store query latency and failures per endpoint.
"""

from prometheus_client import Counter, Histogram

query_duration = Histogram(
    "dashboard_query_duration_seconds",
    "Time spent executing results-store queries",
    ["label"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
query_failures = Counter(
    "dashboard_query_failures_total",
    "Total number of failed results-store queries",
    ["label"],
)
cache_lookups = Counter(
    "dashboard_cache_lookups_total",
    "Response cache lookups by outcome",
    ["key", "outcome"],
)


def track_query(label: str, elapsed: float) -> None:
    query_duration.labels(label=label).observe(elapsed)


def track_query_failure(label: str) -> None:
    query_failures.labels(label=label).inc()


def track_cache_lookup(key: str, hit: bool) -> None:
    cache_lookups.labels(key=key, outcome="hit" if hit else "miss").inc()
