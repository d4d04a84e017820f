"""
OpenTelemetry metrics for the batch engine.

Until ``setup_metrics`` installs a real meter, every instrument comes from a
no-op meter, so library code can record unconditionally.
"""

import time
from contextlib import contextmanager
from typing import Any

from opentelemetry.metrics import Counter as OTelCounter
from opentelemetry.metrics import Histogram, Meter, NoOpMeter

from .logging import get_logger

logger = get_logger(__name__)

PREFIX = "brandlens"


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, OTelCounter] = {}
        self._histograms: dict[str, Histogram] = {}

        # Running totals for get_summary(); OTel instruments are write-only
        self._totals: dict[str, float] = {}

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self.counter("provider_calls_total", "Provider calls attempted")
        self.counter("provider_failures_total", "Provider calls that raised or timed out")
        self.counter("fallbacks_total", "Calls retried against the fallback model")
        self.counter("responses_failed_total", "Responses stored with an error after fallback")
        self.histogram("provider_call_duration_seconds", "Provider call duration", "s")
        self.histogram("gate_wait_seconds", "Time spent waiting for gate permits", "s")
        self.counter("events_published_total", "Batch events published")
        self.counter("events_dropped_total", "Batch events dropped on full subscriber queues")
        self.counter("pipeline_runs_total", "Pipeline runs by outcome")

    def counter(self, name: str, description: str = "", unit: str = "1") -> OTelCounter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"{PREFIX}_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"{PREFIX}_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def increment(self, name: str, value: int = 1, attributes: dict[str, str] | None = None):
        self.counter(name).add(value, attributes or {})
        self._totals[name] = self._totals.get(name, 0) + value

    def observe(self, name: str, value: float, attributes: dict[str, str] | None = None):
        self.histogram(name).record(value, attributes or {})

    def record_provider_call(self, provider: str, model: str, duration: float, success: bool):
        attributes = {"provider": provider, "model": model, "success": str(success).lower()}
        self.increment("provider_calls_total", attributes=attributes)
        if not success:
            self.increment("provider_failures_total", attributes=attributes)
        self.observe("provider_call_duration_seconds", duration, attributes)

    def record_pipeline_run(self, pipeline_type: str, success: bool):
        self.increment(
            "pipeline_runs_total",
            attributes={"pipeline_type": pipeline_type, "success": str(success).lower()},
        )

    def get_summary(self) -> dict[str, Any]:
        """Counter totals recorded through this collector."""
        return dict(self._totals)


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Install the global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, creating a no-op one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter(PREFIX))
    return _metrics_collector


def reset_metrics() -> None:
    global _metrics_collector
    _metrics_collector = None


def counter(name: str, description: str = "", unit: str = "1") -> OTelCounter:
    return get_metrics_collector().counter(name, description, unit)


def histogram(name: str, description: str = "", unit: str = "1") -> Histogram:
    return get_metrics_collector().histogram(name, description, unit)


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager recording the block's duration in seconds."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        histogram(metric_name, "Operation duration", "s").record(duration, attributes or {})
