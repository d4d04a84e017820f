"""Core engine: gate, dispatch, pipelines, aggregation, tracking, events and reports."""

from .errors import (
    AggregationError,
    BrandLensError,
    ConfigurationError,
    OrchestrationError,
    PersistenceError,
    ProviderError,
)
from .models import (
    BatchEvent,
    BatchExecution,
    BatchResult,
    EventType,
    ExecutionStatus,
    PipelineType,
    ProjectContext,
    PromptSet,
    RawResponse,
    Report,
)

__all__ = [
    "AggregationError",
    "BrandLensError",
    "ConfigurationError",
    "OrchestrationError",
    "PersistenceError",
    "ProviderError",
    "BatchEvent",
    "BatchExecution",
    "BatchResult",
    "EventType",
    "ExecutionStatus",
    "PipelineType",
    "ProjectContext",
    "PromptSet",
    "RawResponse",
    "Report",
]
