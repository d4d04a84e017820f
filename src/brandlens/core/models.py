"""
Domain records shared by the orchestration engine.

Records owned by a single run (RawResponse, BatchExecution) are plain
dataclasses; values that must never change after creation (PromptSet,
ProjectContext, Report) are frozen. BatchEvent is the wire-level message and is
a pydantic model so it serializes to the camelCase JSON shape subscribers read.
"""

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PipelineType(str, Enum):
    """The four analysis kinds."""

    SPONTANEOUS = "spontaneous"
    SENTIMENT = "sentiment"
    COMPARISON = "comparison"
    ACCURACY = "accuracy"


# Pipeline tag used on batch-level events of a full run
FULL_BATCH = "full"


class ExecutionStatus(str, Enum):
    """Batch execution status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    """State-transition events pushed to subscribers."""

    BATCH_STARTED = "batch_started"
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_PROGRESS = "pipeline_progress"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    BATCH_COMPLETED = "batch_completed"
    BATCH_FAILED = "batch_failed"
    PROMPTSET_READY = "promptset_ready"


TERMINAL_EVENTS = frozenset({EventType.BATCH_COMPLETED, EventType.BATCH_FAILED})


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ModelIdentity:
    """A (provider, model) pair."""

    provider: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model}"

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class PromptSet:
    """Ordered prompts per pipeline type for one project."""

    project_id: str
    prompts: Mapping[PipelineType, tuple[str, ...]]
    version: int = 1

    def prompts_for(self, pipeline_type: PipelineType) -> tuple[str, ...]:
        return self.prompts.get(pipeline_type, ())

    @classmethod
    def from_dict(cls, project_id: str, data: Mapping[str, Any], version: int = 1) -> "PromptSet":
        prompts = {
            PipelineType(key): tuple(str(p) for p in values)
            for key, values in data.items()
            if key in {t.value for t in PipelineType}
        }
        return cls(project_id=project_id, prompts=prompts, version=version)


@dataclass(frozen=True)
class ProjectContext:
    """Brand facts the prompts and parsers need."""

    project_id: str
    brand_name: str
    project_name: str = ""
    competitors: tuple[str, ...] = ()
    key_attributes: tuple[str, ...] = ()
    website_url: str = ""
    enabled_models: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.project_name or self.brand_name

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProjectContext":
        return cls(
            project_id=str(data["project_id"]),
            brand_name=str(data["brand_name"]),
            project_name=str(data.get("project_name", "")),
            competitors=tuple(data.get("competitors", ())),
            key_attributes=tuple(data.get("key_attributes", ())),
            website_url=str(data.get("website_url", "")),
            enabled_models=tuple(data.get("enabled_models", ())),
        )


@dataclass
class RawResponse:
    """One provider call outcome plus the fields extracted from it."""

    project_id: str
    llm_provider: str
    model: str
    pipeline_type: PipelineType
    prompt_index: int
    model_index: int = 0
    run_index: int = 0
    response_text: str = ""
    mentioned: bool | None = False
    top_of_mind: list[str] = field(default_factory=list)
    sentiment: str | None = "neutral"
    accuracy: float | None = 0.0
    winner: str | None = ""
    differentiators: list[str] = field(default_factory=list)
    attribute_scores: dict[str, float | None] = field(default_factory=dict)
    citations: list[dict[str, Any]] | None = None
    tool_usage: list[dict[str, Any]] | None = None
    used_web_search: bool | None = None
    error: str | None = None
    used_fallback: bool = False
    malformed_fields: list[str] = field(default_factory=list)

    @property
    def identity(self) -> tuple[int, int, int]:
        """(prompt, model, run) triple, unique within an execution."""
        return (self.prompt_index, self.model_index, self.run_index)

    @property
    def model_identity(self) -> ModelIdentity:
        return ModelIdentity(self.llm_provider, self.model)

    def is_malformed(self, field_name: str) -> bool:
        return field_name in self.malformed_fields

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pipeline_type"] = self.pipeline_type.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawResponse":
        values = dict(data)
        values["pipeline_type"] = PipelineType(values["pipeline_type"])
        return cls(**values)


@dataclass
class BatchResult:
    """Serialized summary of one pipeline within an execution."""

    pipeline_type: PipelineType
    payload: str
    created_at: datetime = field(default_factory=utcnow)

    def summary(self) -> dict[str, Any]:
        return json.loads(self.payload)

    @property
    def is_error(self) -> bool:
        return "error" in self.summary()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_type": self.pipeline_type.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchResult":
        return cls(
            pipeline_type=PipelineType(data["pipeline_type"]),
            payload=data["payload"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class BatchExecution:
    """One orchestrated run of one or more pipeline types for a project."""

    id: str
    project_id: str
    executed_at: datetime = field(default_factory=utcnow)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    final_results: list[BatchResult] = field(default_factory=list)
    error: str | None = None
    config_fingerprint: str = ""
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExecutionStatus.RUNNING

    def result_for(self, pipeline_type: PipelineType) -> BatchResult | None:
        for result in self.final_results:
            if result.pipeline_type is pipeline_type:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "executed_at": self.executed_at.isoformat(),
            "status": self.status.value,
            "final_results": [r.to_dict() for r in self.final_results],
            "error": self.error,
            "config_fingerprint": self.config_fingerprint,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchExecution":
        completed_at = data.get("completed_at")
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            executed_at=datetime.fromisoformat(data["executed_at"]),
            status=ExecutionStatus(data["status"]),
            final_results=[BatchResult.from_dict(r) for r in data.get("final_results", [])],
            error=data.get("error"),
            config_fingerprint=data.get("config_fingerprint", ""),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )


class BatchEvent(BaseModel):
    """Ephemeral state-transition event (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    batch_execution_id: str
    project_id: str
    project_name: str = ""
    event_type: EventType
    pipeline_type: str | None = None
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    progress: int | None = Field(None, ge=0, le=100)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict in the published shape."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


@dataclass(frozen=True)
class Report:
    """Frozen snapshot of aggregated metrics for a project."""

    id: str
    project_id: str
    batch_execution_id: str
    generated_at: datetime
    pipeline_types: tuple[PipelineType, ...]
    metrics: Mapping[str, Any]
    metadata: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "batch_execution_id": self.batch_execution_id,
            "generated_at": self.generated_at.isoformat(),
            "pipeline_types": [t.value for t in self.pipeline_types],
            "metrics": thaw(self.metrics),
            "metadata": thaw(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Report":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            batch_execution_id=data["batch_execution_id"],
            generated_at=datetime.fromisoformat(data["generated_at"]),
            pipeline_types=tuple(PipelineType(t) for t in data["pipeline_types"]),
            metrics=freeze(data["metrics"]),
            metadata=freeze(data["metadata"]),
        )


def freeze(value: Any) -> Any:
    """Recursively convert dicts to read-only mappings and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of ``freeze``, producing plain JSON-ready containers."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value
