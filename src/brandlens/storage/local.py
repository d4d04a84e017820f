"""
Local filesystem backends storing one JSON document per record.

Layout under the data directory::

    projects/<project_id>.json
    prompt_sets/<project_id>.json
    executions/<execution_id>.json
    responses/<execution_id>/<pipeline>-<prompt>-<model>-<run>.json
    reports/<report_id>.json
"""

import asyncio
import json
from pathlib import Path
from typing import Any

from ..core.errors import PersistenceError
from ..core.models import (
    BatchExecution,
    PipelineType,
    ProjectContext,
    PromptSet,
    RawResponse,
    Report,
)
from ..observability.logging import get_logger
from .base import (
    ExecutionStore,
    ProjectStore,
    PromptSetStore,
    RawResponseStore,
    ReportStore,
    newest_first,
    response_sort_key,
)

log = get_logger("brandlens.storage")


def _checked_id(value: str) -> str:
    """Record ids become file or directory names and must stay one path segment."""
    if not value or value in (".", "..") or "/" in value or "\\" in value:
        raise PersistenceError(f"Invalid record id {value!r}")
    return value


class LocalStore:
    """JSON documents under a root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        log.info("Local store initialized", root=str(self.root))

    def _path(self, relpath: str) -> Path:
        parts = relpath.split("/")
        if any(part in ("", ".", "..") or "\\" in part for part in parts):
            raise PersistenceError(f"Invalid storage path {relpath!r}")
        return self.root.joinpath(*parts)

    def save_json(self, relpath: str, obj: Any) -> Path:
        """Write atomically: a temp file is renamed over the target."""
        path = self._path(relpath)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(obj, indent=2, default=str), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {relpath}: {e}") from e
        log.debug("Saved JSON document", path=relpath)
        return path

    def read_json(self, relpath: str) -> Any | None:
        path = self._path(relpath)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def list_json(self, prefix: str) -> list[Any]:
        directory = self._path(prefix)
        if not directory.is_dir():
            return []
        return [
            json.loads(p.read_text(encoding="utf-8")) for p in sorted(directory.glob("*.json"))
        ]


class _LocalBackend:
    def __init__(self, store: LocalStore):
        self.store = store

    async def _write(self, relpath: str, obj: Any) -> None:
        await asyncio.to_thread(self.store.save_json, relpath, obj)

    async def _read(self, relpath: str) -> Any | None:
        return await asyncio.to_thread(self.store.read_json, relpath)

    async def _list(self, prefix: str) -> list[Any]:
        return await asyncio.to_thread(self.store.list_json, prefix)


class LocalProjectStore(_LocalBackend, ProjectStore):
    async def get(self, project_id: str) -> ProjectContext | None:
        data = await self._read(f"projects/{_checked_id(project_id)}.json")
        return ProjectContext.from_dict(data) if data else None

    async def save(self, project: ProjectContext) -> None:
        await self._write(
            f"projects/{_checked_id(project.project_id)}.json",
            {
                "project_id": project.project_id,
                "brand_name": project.brand_name,
                "project_name": project.project_name,
                "competitors": list(project.competitors),
                "key_attributes": list(project.key_attributes),
                "website_url": project.website_url,
                "enabled_models": list(project.enabled_models),
            },
        )


class LocalPromptSetStore(_LocalBackend, PromptSetStore):
    async def get(self, project_id: str) -> PromptSet | None:
        data = await self._read(f"prompt_sets/{_checked_id(project_id)}.json")
        if not data:
            return None
        return PromptSet.from_dict(project_id, data["prompts"], version=data.get("version", 1))

    async def save(self, prompt_set: PromptSet) -> None:
        await self._write(
            f"prompt_sets/{_checked_id(prompt_set.project_id)}.json",
            {
                "version": prompt_set.version,
                "prompts": {t.value: list(p) for t, p in prompt_set.prompts.items()},
            },
        )


class LocalExecutionStore(_LocalBackend, ExecutionStore):
    async def save(self, execution: BatchExecution) -> None:
        await self._write(f"executions/{_checked_id(execution.id)}.json", execution.to_dict())

    async def get(self, execution_id: str) -> BatchExecution | None:
        data = await self._read(f"executions/{_checked_id(execution_id)}.json")
        return BatchExecution.from_dict(data) if data else None

    async def list_for_project(self, project_id: str) -> list[BatchExecution]:
        return newest_first(
            [
                BatchExecution.from_dict(data)
                for data in await self._list("executions")
                if data["project_id"] == project_id
            ]
        )


class LocalRawResponseStore(_LocalBackend, RawResponseStore):
    async def save(self, execution_id: str, response: RawResponse) -> None:
        p, m, r = response.identity
        name = f"{response.pipeline_type.value}-{p}-{m}-{r}.json"
        await self._write(
            f"responses/{_checked_id(execution_id)}/{name}",
            response.to_dict(),
        )

    async def list_for_execution(
        self, execution_id: str, pipeline_type: PipelineType | None = None
    ) -> list[RawResponse]:
        documents = await self._list(f"responses/{_checked_id(execution_id)}")
        responses = [RawResponse.from_dict(d) for d in documents]
        if pipeline_type is not None:
            responses = [r for r in responses if r.pipeline_type is pipeline_type]
        return sorted(responses, key=response_sort_key)


class LocalReportStore(_LocalBackend, ReportStore):
    async def save(self, report: Report) -> None:
        await self._write(f"reports/{_checked_id(report.id)}.json", report.to_dict())

    async def get(self, report_id: str) -> Report | None:
        data = await self._read(f"reports/{_checked_id(report_id)}.json")
        return Report.from_dict(data) if data else None

    async def list_for_project(self, project_id: str) -> list[Report]:
        reports = [
            Report.from_dict(data)
            for data in await self._list("reports")
            if data["project_id"] == project_id
        ]
        return sorted(reports, key=lambda r: r.generated_at, reverse=True)
