"""
Observability for the batch engine.

Components:
- Structured logging: single-line ``key=value`` records carrying the batch
  execution id and pipeline type from context variables
- Performance probes: always-on timing with Prometheus counters and spans
- Metrics: OpenTelemetry instruments for provider calls, fallbacks, gate wait
  and event delivery (no-op until a meter is installed)
- Tracing: OpenTelemetry SDK with an optional OTLP exporter

Configuration:
    - BL_OBSERVABILITY__LOG_LEVEL=INFO
    - BL_OBSERVABILITY__ENABLE_TRACING=true
    - BL_OBSERVABILITY__ENABLE_METRICS=true
    - BL_OBSERVABILITY__OTLP_ENDPOINT=http://...
"""

from .logging import get_logger, log_context, setup_logging
from .metrics import counter, get_metrics_collector, histogram, timer
from .probe import probe
from .tracing import get_tracing_manager, trace_span

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "counter",
    "histogram",
    "timer",
    "get_metrics_collector",
    "probe",
    "trace_span",
    "get_tracing_manager",
]
