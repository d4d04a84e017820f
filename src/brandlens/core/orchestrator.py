"""
Batch orchestrator: the entry point for running analysis pipelines.

Each request creates a batch execution, runs the requested pipeline types
(concurrently for a full batch) and drives the execution to completed or
failed while publishing state-transition events.

Work runs in a task the orchestrator owns. Callers await it through
``asyncio.shield``: a caller that goes away stops waiting, but in-flight
provider calls carry on and their raw responses are still persisted.
"""

import asyncio
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..config.settings import Settings
from ..observability.logging import get_logger, log_context
from ..observability.probe import probe
from ..observability.tracing import add_span_attributes
from ..providers.base import ModelProviderClient
from ..storage.base import (
    ExecutionStore,
    NotificationChannel,
    ProjectStore,
    PromptSetStore,
    RawResponseStore,
    ReportNotifier,
    ReportStore,
)
from .determinism import config_fingerprint
from .dispatcher import ModelDispatcher
from .errors import (
    ConfigurationError,
    OrchestrationError,
    PersistenceError,
    ProjectNotFoundError,
    PromptSetNotFoundError,
    ReportError,
)
from .events import EventPublisher, Subscription
from .gate import ConcurrencyGate
from .models import (
    FULL_BATCH,
    BatchEvent,
    BatchExecution,
    EventType,
    PipelineType,
    ProjectContext,
    PromptSet,
    Report,
)
from .reports import ReportGenerator
from .runner import PipelineOutcome, PipelineRunner, ProgressCounter, resolve_slots
from .tracker import BatchExecutionTracker

logger = get_logger(__name__)


@dataclass
class PipelineRunResult:
    """Outcome of ``run_pipeline``."""

    batch_execution_id: str
    pipeline_type: PipelineType
    result: dict[str, Any]

    @property
    def succeeded(self) -> bool:
        return "error" not in self.result

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_execution_id": self.batch_execution_id,
            "pipeline_type": self.pipeline_type.value,
            "result": self.result,
        }


@dataclass
class BatchRunResult:
    """Outcome of ``run_full_batch``."""

    batch_execution_id: str
    results: dict[str, dict[str, Any]] = field(default_factory=dict)
    report: Report | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_execution_id": self.batch_execution_id,
            "results": self.results,
            "report_id": self.report.id if self.report else None,
        }


class BatchOrchestrator:
    """Runs pipelines for projects and exposes execution history and reports."""

    def __init__(
        self,
        settings: Settings,
        client: ModelProviderClient,
        prompt_sets: PromptSetStore,
        projects: ProjectStore,
        executions: ExecutionStore,
        raw_responses: RawResponseStore,
        reports: ReportStore,
        publisher: EventPublisher | None = None,
        channel: NotificationChannel | None = None,
        notifier: ReportNotifier | None = None,
    ):
        self.settings = settings
        self.prompt_sets = prompt_sets
        self.projects = projects
        self.fingerprint = config_fingerprint(settings)
        self.publisher = publisher or EventPublisher(
            channel=channel, queue_size=settings.orchestrator.subscriber_queue_size
        )
        self.tracker = BatchExecutionTracker(executions, self.fingerprint)
        self.report_generator = ReportGenerator(reports, raw_responses, notifier)

        # A bad gate configuration fails each run before start rather than construction
        self.gate: ConcurrencyGate | None = None
        self._gate_error: ConfigurationError | None = None
        try:
            self.gate = ConcurrencyGate.from_config(settings.concurrency)
        except ConfigurationError as e:
            self._gate_error = e
            logger.error(f"Concurrency gate misconfigured: {e}")

        self.runner: PipelineRunner | None = None
        if self.gate is not None:
            dispatcher = ModelDispatcher(client, self.gate, settings)
            self.runner = PipelineRunner(
                dispatcher, self.tracker, raw_responses, self.publisher, settings
            )

        self._tasks: set[asyncio.Task] = set()

    async def run_pipeline(
        self, project_id: str, pipeline_type: PipelineType | str
    ) -> PipelineRunResult:
        """Run a single pipeline type in a new batch execution."""
        pipeline_type = PipelineType(pipeline_type)
        execution, outcomes, _ = await self._shielded(
            self._execute(project_id, (pipeline_type,), full=False)
        )
        return PipelineRunResult(
            batch_execution_id=execution.id,
            pipeline_type=pipeline_type,
            result=outcomes[0].result.summary(),
        )

    async def run_full_batch(
        self, project_id: str, pipeline_types: Iterable[PipelineType | str] | None = None
    ) -> BatchRunResult:
        """Run every requested pipeline type (all four by default) in one execution."""
        requested = pipeline_types or list(PipelineType)
        # Duplicates collapse while keeping request order
        types = tuple(dict.fromkeys(PipelineType(t) for t in requested))
        execution, outcomes, report = await self._shielded(
            self._execute(project_id, types, full=True)
        )
        return BatchRunResult(
            batch_execution_id=execution.id,
            results={o.pipeline_type.value: o.result.summary() for o in outcomes},
            report=report,
        )

    async def get_batch_executions(self, project_id: str) -> list[BatchExecution]:
        """Executions of a project, newest first."""
        return await self.tracker.list_for_project(project_id)

    async def get_batch_execution(self, batch_execution_id: str) -> BatchExecution:
        return await self.tracker.get(batch_execution_id)

    async def generate_report_from_batch(self, batch_execution_id: str) -> Report:
        """Build a report from a completed execution on demand."""
        execution = await self.tracker.get(batch_execution_id)
        return await self.report_generator.generate_from_batch(execution)

    async def announce_prompt_set(self, project_id: str) -> BatchEvent:
        """Tell global subscribers a project's prompt set is ready to run."""
        project = await self._project(project_id)
        prompt_set = await self._prompt_set(project_id)
        counts = ", ".join(
            f"{t.value}={len(prompt_set.prompts_for(t))}" for t in PipelineType
        )
        return self.publisher.emit(
            EventType.PROMPTSET_READY,
            batch_execution_id="",
            project_id=project_id,
            project_name=project.display_name,
            message=f"Prompt set v{prompt_set.version} ready ({counts})",
        )

    def subscribe(self, batch_execution_id: str | None = None) -> Subscription:
        return self.publisher.subscribe(batch_execution_id)

    async def drain(self) -> None:
        """Wait for every run still in flight, including ones whose callers left."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _shielded(self, coro: Coroutine) -> Any:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._settled)
        return await asyncio.shield(task)

    def _settled(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Retrieve the error so runs abandoned by their caller do not warn at exit
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Run ended with {type(task.exception()).__name__}")

    async def _execute(
        self, project_id: str, pipeline_types: tuple[PipelineType, ...], full: bool
    ) -> tuple[BatchExecution, list[PipelineOutcome], Report | None]:
        execution = await self.tracker.create(project_id)
        tag = FULL_BATCH if full else pipeline_types[0].value

        with log_context(execution_id=execution.id), probe("orchestrator.execute", pipeline=tag):
            add_span_attributes(execution_id=execution.id, project_id=project_id, pipelines=tag)
            project: ProjectContext | None = None
            try:
                project = await self._project(project_id)
                prompt_set = await self._prompt_set(project_id)
                self._check_runnable(project, prompt_set, pipeline_types, full)
            except OrchestrationError as e:
                await self._abort(execution, project_id, project, tag, e)
                raise

            self._emit(
                execution,
                project,
                EventType.BATCH_STARTED,
                tag,
                f"Batch started for {', '.join(t.value for t in pipeline_types)}",
                progress=0,
            )
            progress = ProgressCounter(
                sum(self.runner.count_calls(project, prompt_set, t) for t in pipeline_types)
            )
            logger.info(
                "Batch execution started",
                project_id=project_id,
                pipelines=",".join(t.value for t in pipeline_types),
                calls=progress.total,
            )

            try:
                settled = await asyncio.gather(
                    *(
                        self.runner.run(execution, project, prompt_set, t, progress)
                        for t in pipeline_types
                    ),
                    return_exceptions=True,
                )
                errors = [o for o in settled if isinstance(o, BaseException)]
                if errors:
                    raise errors[0]
                await self.tracker.complete(execution)
            except Exception as e:
                # PersistenceError in practice; anything else is a bug, but the run still ends
                await self._abort(execution, project_id, project, tag, e)
                raise

            outcomes: list[PipelineOutcome] = list(settled)
            failed = [o.pipeline_type.value for o in outcomes if not o.succeeded]
            message = "Batch completed"
            if failed:
                message += f" ({', '.join(failed)} failed)"
            self._emit(execution, project, EventType.BATCH_COMPLETED, tag, message, progress=100)

            report = None
            if full and self.settings.orchestrator.auto_generate_reports:
                try:
                    report = await self.report_generator.generate_automatic(execution)
                except (ReportError, PersistenceError) as e:
                    logger.warning(f"Automatic report skipped: {e}")

            return execution, outcomes, report

    def _check_runnable(
        self,
        project: ProjectContext,
        prompt_set: PromptSet,
        pipeline_types: tuple[PipelineType, ...],
        full: bool,
    ) -> None:
        if self._gate_error is not None:
            raise self._gate_error
        resolve_slots(self.settings, project)
        if not full:
            # A single pipeline with nothing to run cannot start; a full batch
            # records an empty type as a failed pipeline instead
            self.runner.plan(project, prompt_set, pipeline_types[0])
        elif not any(prompt_set.prompts_for(t) for t in pipeline_types):
            raise PromptSetNotFoundError(
                f"Prompt set for project {project.project_id} has no prompts for "
                f"{', '.join(t.value for t in pipeline_types)}"
            )

    async def _project(self, project_id: str) -> ProjectContext:
        project = await self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    async def _prompt_set(self, project_id: str) -> PromptSet:
        prompt_set = await self.prompt_sets.get(project_id)
        if prompt_set is None:
            raise PromptSetNotFoundError(f"No prompt set for project {project_id}")
        return prompt_set

    async def _abort(
        self,
        execution: BatchExecution,
        project_id: str,
        project: ProjectContext | None,
        tag: str,
        error: Exception,
    ) -> None:
        """Mark the execution failed and announce it; the original error is re-raised by the caller."""
        logger.error(f"Batch execution failed: {error}", error_type=type(error).__name__)
        if not execution.is_terminal:
            try:
                await self.tracker.fail(execution, str(error))
            except PersistenceError as e:
                logger.error(f"Could not record failure of batch execution: {e}")
        self.publisher.emit(
            EventType.BATCH_FAILED,
            batch_execution_id=execution.id,
            project_id=project_id,
            project_name=project.display_name if project else "",
            pipeline_type=tag,
            message="Batch failed",
            error=str(error),
        )

    def _emit(
        self,
        execution: BatchExecution,
        project: ProjectContext,
        event_type: EventType,
        tag: str,
        message: str,
        progress: int | None = None,
    ) -> None:
        self.publisher.emit(
            event_type,
            batch_execution_id=execution.id,
            project_id=project.project_id,
            project_name=project.display_name,
            pipeline_type=tag,
            message=message,
            progress=progress,
        )
