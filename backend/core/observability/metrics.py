"""In-process metrics counters and histograms for the sync engine."""

from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 100:
        metrics["buckets"]["<100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    elif value < 10000:
        metrics["buckets"]["1000-10000"] += 1
    else:
        metrics["buckets"][">=10000"] += 1


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


# Sync engine metrics
def increment_sync_runs(status: str) -> None:
    increment_counter("bhb_sync_runs_total", labels={"status": status})


def increment_sync_records(kind: str, outcome: str, n: float = 1.0) -> None:
    increment_counter("bhb_sync_records_total", labels={"kind": kind, "outcome": outcome}, value=n)


def increment_sync_errors(kind: str) -> None:
    increment_counter("bhb_sync_errors_total", labels={"kind": kind})


def record_sync_duration(duration_ms: float) -> None:
    record_histogram("bhb_sync_duration_ms", duration_ms)
