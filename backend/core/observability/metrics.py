"""In-process metrics counters and histograms."""

from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels.items()) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 0.1:
        metrics["buckets"]["<0.1"] += 1
    elif value < 1:
        metrics["buckets"]["0.1-1.0"] += 1
    elif value < 10:
        metrics["buckets"]["1.0-10.0"] += 1
    elif value < 100:
        metrics["buckets"]["10.0-100.0"] += 1
    elif value < 1000:
        metrics["buckets"]["100.0-1000.0"] += 1
    else:
        metrics["buckets"][">=1000.0"] += 1


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    for key, data in _metrics.items():
        metric_result = {"count": data["count"], "sum": data["sum"]}

        if data["values"]:
            values = data["values"]
            metric_result.update(
                {
                    "min": min(values),
                    "max": max(values),
                    "avg": data["sum"] / len(values),
                    "buckets": dict(data["buckets"]),
                }
            )

        result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Numbering metrics
def increment_numbering_allocated(mode: str) -> None:
    increment_counter("nfce_numbering_allocated_total", labels={"mode": mode})


def increment_code_collisions() -> None:
    increment_counter("nfce_code_collisions_total")


def increment_numbering_released() -> None:
    increment_counter("nfce_numbering_released_total")


def increment_reservations_expired(n: float = 1.0) -> None:
    increment_counter("nfce_reservations_expired_total", value=n)


# Session cache metrics
def increment_session_cache_hits() -> None:
    increment_counter("nfce_session_cache_hits_total")


def increment_session_cache_misses() -> None:
    increment_counter("nfce_session_cache_misses_total")


def increment_session_cache_evictions(reason: str) -> None:
    increment_counter("nfce_session_cache_evictions_total", labels={"reason": reason})


# Authority round-trip metrics
def record_authority_duration(operation: str, duration_ms: float) -> None:
    record_histogram("nfce_authority_duration_ms", duration_ms, labels={"operation": operation})


def increment_authority_failures(operation: str, kind: str) -> None:
    increment_counter(
        "nfce_authority_failures_total", labels={"operation": operation, "kind": kind}
    )


def increment_outcomes(operation: str, status: str) -> None:
    increment_counter("nfce_outcomes_total", labels={"operation": operation, "status": status})
