"""
Prometheus metrics collection for eventfold.

Provides observability into validation outcomes, materialization progress
and consumer lag.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Log Metrics
# ============================================================================

log_entries_appended_total = Counter(
    "eventfold_log_entries_appended_total",
    "Total number of entries appended to a partitioned log",
    ["log_name"],
)

corrupt_envelopes_total = Counter(
    "eventfold_corrupt_envelopes_total",
    "Total number of undecodable log entries skipped",
    ["log_name"],
)

consumer_lag = Gauge(
    "eventfold_consumer_lag",
    "Entries between the committed checkpoint and the partition head",
    ["log_name", "partition"],
)

# ============================================================================
# Validator Metrics
# ============================================================================

commands_validated_total = Counter(
    "eventfold_commands_validated_total",
    "Total number of commands validated",
    ["command_type", "outcome"],  # outcome: accepted, rejected, duplicate
)

rejections_total = Counter(
    "eventfold_rejections_total",
    "Total number of rejections recorded",
    ["code"],
)

validate_duration_seconds = Histogram(
    "eventfold_validate_duration_seconds",
    "Duration of command validation in seconds",
    ["command_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# ============================================================================
# Materializer Metrics
# ============================================================================

events_materialized_total = Counter(
    "eventfold_events_materialized_total",
    "Total number of events handled by the materializer",
    ["resource_type", "result"],  # result: applied, duplicate, parked, gap_unresolved
)

unresolved_gaps_total = Counter(
    "eventfold_unresolved_gaps_total",
    "Total number of resources halted on a version gap",
    ["resource_type"],
)

apply_duration_seconds = Histogram(
    "eventfold_apply_duration_seconds",
    "Duration of a single event apply in seconds",
    ["resource_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_duration(
    histogram: Histogram, label_of: Callable[..., str]
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator observing a call's duration in a labelled histogram.

    Args:
        histogram: Histogram with exactly one label
        label_of: Computes the label value from the call arguments

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                histogram.labels(label_of(*args, **kwargs)).observe(
                    time.perf_counter() - start
                )

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)
