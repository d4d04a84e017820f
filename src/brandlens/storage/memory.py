"""
In-memory backends for tests and embedding.

Records are stored as serialized snapshots, so callers holding a live object
never share state with what was committed.
"""

from typing import Any

from ..core.models import (
    BatchExecution,
    PipelineType,
    ProjectContext,
    PromptSet,
    RawResponse,
    Report,
)
from .base import (
    ExecutionStore,
    ProjectStore,
    PromptSetStore,
    RawResponseStore,
    ReportStore,
    newest_first,
    response_sort_key,
)


class InMemoryPromptSetStore(PromptSetStore):
    def __init__(self, prompt_sets: list[PromptSet] | None = None):
        self._prompt_sets: dict[str, PromptSet] = {}
        for prompt_set in prompt_sets or []:
            self._prompt_sets[prompt_set.project_id] = prompt_set

    async def get(self, project_id: str) -> PromptSet | None:
        return self._prompt_sets.get(project_id)

    async def save(self, prompt_set: PromptSet) -> None:
        self._prompt_sets[prompt_set.project_id] = prompt_set


class InMemoryProjectStore(ProjectStore):
    def __init__(self, projects: list[ProjectContext] | None = None):
        self._projects = {project.project_id: project for project in projects or []}

    async def get(self, project_id: str) -> ProjectContext | None:
        return self._projects.get(project_id)

    async def save(self, project: ProjectContext) -> None:
        self._projects[project.project_id] = project


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self):
        self._executions: dict[str, dict[str, Any]] = {}

    async def save(self, execution: BatchExecution) -> None:
        self._executions[execution.id] = execution.to_dict()

    async def get(self, execution_id: str) -> BatchExecution | None:
        data = self._executions.get(execution_id)
        return BatchExecution.from_dict(data) if data else None

    async def list_for_project(self, project_id: str) -> list[BatchExecution]:
        return newest_first(
            [
                BatchExecution.from_dict(data)
                for data in self._executions.values()
                if data["project_id"] == project_id
            ]
        )


class InMemoryRawResponseStore(RawResponseStore):
    def __init__(self):
        self._responses: dict[str, list[dict[str, Any]]] = {}

    async def save(self, execution_id: str, response: RawResponse) -> None:
        self._responses.setdefault(execution_id, []).append(response.to_dict())

    async def list_for_execution(
        self, execution_id: str, pipeline_type: PipelineType | None = None
    ) -> list[RawResponse]:
        responses = [RawResponse.from_dict(data) for data in self._responses.get(execution_id, [])]
        if pipeline_type is not None:
            responses = [r for r in responses if r.pipeline_type is pipeline_type]
        return sorted(responses, key=response_sort_key)


class InMemoryReportStore(ReportStore):
    def __init__(self):
        self._reports: dict[str, Report] = {}

    async def save(self, report: Report) -> None:
        self._reports[report.id] = report

    async def get(self, report_id: str) -> Report | None:
        return self._reports.get(report_id)

    async def list_for_project(self, project_id: str) -> list[Report]:
        reports = [r for r in self._reports.values() if r.project_id == project_id]
        return sorted(reports, key=lambda r: r.generated_at, reverse=True)
