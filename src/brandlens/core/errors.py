"""
Error hierarchy for the batch analysis engine.

Provider and aggregation errors are per-item and never fail a pipeline.
Orchestration errors are fatal before any pipeline starts. Persistence errors
surface to the caller that triggered the write.
"""


class BrandLensError(Exception):
    """Base class for all engine errors."""


class ProviderError(BrandLensError):
    """A model provider call failed (HTTP error, network error, bad payload)."""

    def __init__(self, message: str, provider: str | None = None, model: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


class ProviderTimeoutError(ProviderError):
    """A model provider call exceeded its timeout."""


class AggregationError(BrandLensError):
    """An extracted field is malformed and cannot be aggregated."""

    def __init__(self, field_name: str, value: object):
        super().__init__(f"Malformed value for '{field_name}': {value!r}")
        self.field_name = field_name
        self.value = value


class OrchestrationError(BrandLensError):
    """Orchestration could not start."""


class ConfigurationError(OrchestrationError):
    """Gate limits, model tables or analyzer settings are unusable."""


class ProjectNotFoundError(OrchestrationError):
    """The project is unknown to the project store."""


class PromptSetNotFoundError(OrchestrationError):
    """The project has no prompt set, or none for the requested pipeline."""


class ExecutionNotFoundError(OrchestrationError):
    """No batch execution with the given id."""


class ReportError(OrchestrationError):
    """A report cannot be built from the given execution."""


class PersistenceError(BrandLensError):
    """A store write failed."""


class InvalidTransitionError(BrandLensError):
    """A batch execution status change that the state machine forbids."""


class TerminalStateError(InvalidTransitionError):
    """A write was attempted on a completed or failed batch execution."""
