"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
_lock = threading.Lock()


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 100:
            metrics["buckets"]["<100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        elif value < 5000:
            metrics["buckets"]["1000-5000"] += 1
        elif value < 30000:
            metrics["buckets"]["5000-30000"] += 1
        else:
            metrics["buckets"][">=30000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
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
    with _lock:
        _metrics.clear()


# Authority integration metrics
def increment_auth_exchange(outcome: str) -> None:
    increment_counter("arca_auth_total", labels={"outcome": outcome})


def increment_documents_emitted(document_type: int) -> None:
    increment_counter("arca_documents_emitted_total", labels={"type": str(document_type)})


def increment_document_rejections(kind: str) -> None:
    """kind: validation|rejected|duplicate_number|transport|authentication."""
    increment_counter("arca_document_rejections_total", labels={"kind": kind})


def record_remote_call(operation: str, duration_ms: float) -> None:
    record_histogram("arca_remote_call_ms", duration_ms, labels={"operation": operation})


def increment_padron_lookup(result: str) -> None:
    increment_counter("arca_padron_lookups_total", labels={"result": result})
