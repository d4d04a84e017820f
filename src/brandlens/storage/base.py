"""
Collaborator interfaces the engine persists through and reads from.

Writes raise ``PersistenceError`` when the backend fails. Reads of unknown keys
return ``None`` (or an empty list) rather than raising.
"""

from abc import ABC, abstractmethod

from ..core.models import (
    BatchEvent,
    BatchExecution,
    PipelineType,
    ProjectContext,
    PromptSet,
    RawResponse,
    Report,
)


class PromptSetStore(ABC):
    @abstractmethod
    async def get(self, project_id: str) -> PromptSet | None:
        """Current prompt set of a project."""

    @abstractmethod
    async def save(self, prompt_set: PromptSet) -> None:
        """Replace the project's prompt set wholesale."""


class ProjectStore(ABC):
    @abstractmethod
    async def get(self, project_id: str) -> ProjectContext | None:
        pass

    @abstractmethod
    async def save(self, project: ProjectContext) -> None:
        pass


class ExecutionStore(ABC):
    @abstractmethod
    async def save(self, execution: BatchExecution) -> None:
        """Insert or overwrite the committed state of an execution."""

    @abstractmethod
    async def get(self, execution_id: str) -> BatchExecution | None:
        pass

    @abstractmethod
    async def list_for_project(self, project_id: str) -> list[BatchExecution]:
        """Executions of a project, newest first."""


class RawResponseStore(ABC):
    @abstractmethod
    async def save(self, execution_id: str, response: RawResponse) -> None:
        pass

    @abstractmethod
    async def list_for_execution(
        self, execution_id: str, pipeline_type: PipelineType | None = None
    ) -> list[RawResponse]:
        """Responses of an execution sorted by (pipeline, prompt, model, run)."""


class ReportStore(ABC):
    @abstractmethod
    async def save(self, report: Report) -> None:
        pass

    @abstractmethod
    async def get(self, report_id: str) -> Report | None:
        pass

    @abstractmethod
    async def list_for_project(self, project_id: str) -> list[Report]:
        """Reports of a project, newest first."""


class NotificationChannel(ABC):
    """External fan-out for batch events (e.g. a websocket gateway)."""

    @abstractmethod
    def publish(self, topic: str, event: BatchEvent) -> None:
        pass


class ReportNotifier(ABC):
    """Side effect run when a report is generated automatically (e.g. an email)."""

    @abstractmethod
    async def report_ready(self, report: Report) -> None:
        pass


def response_sort_key(response: RawResponse) -> tuple[str, int, int, int]:
    return (response.pipeline_type.value, *response.identity)


def newest_first(executions: list[BatchExecution]) -> list[BatchExecution]:
    return sorted(executions, key=lambda e: (e.executed_at, e.id), reverse=True)
