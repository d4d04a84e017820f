"""
Performance probes: timing logs, Prometheus counters and OpenTelemetry spans.
"""

import contextlib
import time
from collections import OrderedDict
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from .logging import get_execution_id, get_logger

log = get_logger("brandlens.probe")

tracer = trace.get_tracer("brandlens")

REQS = Counter("brandlens_ops_total", "Probed operations", ["op", "ok"])
LAT = Histogram("brandlens_op_latency_seconds", "Probed operation latency", ["op"])

# Per-execution timings, readable after a run; the oldest executions are evicted
MAX_TRACKED_EXECUTIONS = 256
_METRICS_STORE: OrderedDict[str, dict[str, Any]] = OrderedDict()


@contextlib.contextmanager
def probe(op: str, execution_id: str | None = None, **labels):
    """
    Time an operation.

    Emits one structured log line, updates the Prometheus counter and latency
    histogram, wraps the block in an OpenTelemetry span and, when an execution
    id is known, stores the timing for later inspection.

    Args:
        op: Operation name (e.g., "dispatcher.call")
        execution_id: Batch execution id; defaults to the one in the log context
        **labels: Additional fields for the log line
    """
    execution_id = execution_id or get_execution_id()
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op):
        try:
            yield
        except BaseException as e:
            ok = "false"
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            fields = dict(labels)
            if error_type:
                fields["error"] = error_type
            log.debug(f"probe {op}", op=op, ms=duration_ms, ok=ok, **fields)

            REQS.labels(op=op, ok=ok).inc()
            LAT.labels(op=op).observe(duration_ms / 1000.0)

            if execution_id:
                entry = _execution_entry(execution_id).setdefault(
                    op, {"count": 0, "failures": 0, "total_ms": 0.0}
                )
                entry["count"] += 1
                entry["total_ms"] += duration_ms
                if ok == "false":
                    entry["failures"] += 1


def _execution_entry(execution_id: str) -> dict[str, Any]:
    if execution_id not in _METRICS_STORE:
        while len(_METRICS_STORE) >= MAX_TRACKED_EXECUTIONS:
            _METRICS_STORE.popitem(last=False)
        _METRICS_STORE[execution_id] = {}
    return _METRICS_STORE[execution_id]


def get_execution_metrics(execution_id: str) -> dict[str, Any]:
    """Timings recorded for one batch execution, keyed by operation."""
    return _METRICS_STORE.get(execution_id, {})


def clear_execution_metrics(execution_id: str) -> None:
    _METRICS_STORE.pop(execution_id, None)
