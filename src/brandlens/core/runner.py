"""
Pipeline runner: fan-out of one pipeline type over prompts, models and runs.
"""

import asyncio
from dataclasses import dataclass, field

from ..config.settings import ModelSlot, Settings
from ..observability.logging import get_logger, log_context
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..storage.base import RawResponseStore
from .aggregation import Summary
from .dispatcher import DispatchRequest, ModelDispatcher
from .errors import (
    ConfigurationError,
    OrchestrationError,
    PersistenceError,
    PromptSetNotFoundError,
)
from .events import EventPublisher
from .models import (
    BatchExecution,
    BatchResult,
    EventType,
    PipelineType,
    ProjectContext,
    PromptSet,
    RawResponse,
)
from .pipelines import get_variant
from .tracker import BatchExecutionTracker

logger = get_logger(__name__)


class ProgressCounter:
    """Execution-level progress: settled calls over all planned calls, as a percentage."""

    def __init__(self, total: int):
        self.total = total
        self.settled = 0
        self._last = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, self.settled * 100 // self.total)

    def advance(self) -> int | None:
        """Count one settled call; returns the new percentage when it moved."""
        self.settled += 1
        percent = self.percent
        if percent == self._last:
            return None
        self._last = percent
        return percent


@dataclass
class PipelineOutcome:
    """What one pipeline run produced."""

    pipeline_type: PipelineType
    result: BatchResult
    summary: Summary | None = None
    responses: list[RawResponse] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def resolve_slots(settings: Settings, project: ProjectContext) -> list[ModelSlot]:
    """Enabled model slots for a project.

    Projects naming ``enabled_models`` are limited to those slot ids. When no
    slot remains, the analyzer primary of the spontaneous pipeline serves as the
    single slot if the project did not restrict models; otherwise it is an error.
    """
    slots = settings.enabled_models()
    if project.enabled_models:
        wanted = set(project.enabled_models)
        slots = [slot for slot in slots if slot.id in wanted]
        if not slots:
            raise ConfigurationError(
                f"None of the models enabled for project {project.project_id} are configured: "
                f"{', '.join(project.enabled_models)}"
            )
    if not slots:
        primary = settings.analyzer_for(PipelineType.SPONTANEOUS).primary
        slots = [ModelSlot(id=primary.model, provider=primary.provider, model=primary.model)]
    return slots


class PipelineRunner:
    """Runs one pipeline type for one execution.

    Every (prompt, model, run) becomes a ``DispatchRequest`` in dispatch order.
    Calls run concurrently under the gate; each RawResponse is persisted as soon
    as it settles. Responses are re-sorted by identity before aggregation, so the
    summary does not depend on completion order.
    """

    def __init__(
        self,
        dispatcher: ModelDispatcher,
        tracker: BatchExecutionTracker,
        raw_store: RawResponseStore,
        publisher: EventPublisher,
        settings: Settings,
    ):
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.raw_store = raw_store
        self.publisher = publisher
        self.settings = settings

    def plan(
        self, project: ProjectContext, prompt_set: PromptSet, pipeline_type: PipelineType
    ) -> list[DispatchRequest]:
        prompts = prompt_set.prompts_for(pipeline_type)
        if not prompts:
            raise PromptSetNotFoundError(
                f"No {pipeline_type.value} prompts for project {project.project_id}"
            )

        slots = resolve_slots(self.settings, project)
        variant = get_variant(pipeline_type)
        runs = self.settings.analyzer_for(pipeline_type).runs_per_model if variant.repeats else 1

        return [
            DispatchRequest(
                pipeline_type=pipeline_type,
                prompt_index=prompt_index,
                prompt=prompt,
                slot=slot,
                model_index=model_index,
                run_index=run_index,
            )
            for prompt_index, prompt in enumerate(prompts)
            for model_index, slot in enumerate(slots)
            for run_index in range(runs)
        ]

    def count_calls(
        self, project: ProjectContext, prompt_set: PromptSet, pipeline_type: PipelineType
    ) -> int:
        """Planned calls, or 0 when the pipeline cannot be planned."""
        try:
            return len(self.plan(project, prompt_set, pipeline_type))
        except OrchestrationError:
            return 0

    async def run(
        self,
        execution: BatchExecution,
        project: ProjectContext,
        prompt_set: PromptSet,
        pipeline_type: PipelineType,
        progress: ProgressCounter,
    ) -> PipelineOutcome:
        """Run a pipeline to its terminal event and record its result.

        Provider failures are absorbed per item. Failures of the loop itself
        (nothing to dispatch, a crash while aggregating) fail the pipeline with
        an error-bearing result. ``PersistenceError`` propagates so the caller
        fails the whole execution; when a raw response could not be stored,
        ``pipeline_failed`` is emitted first.
        """
        with log_context(execution_id=execution.id, pipeline=pipeline_type.value):
            self._emit(
                execution,
                project,
                EventType.PIPELINE_STARTED,
                pipeline_type,
                f"{pipeline_type.value} pipeline started",
                progress=progress.percent,
            )
            try:
                with probe("runner.run", pipeline_type=pipeline_type.value):
                    responses = await self._dispatch_all(
                        execution, project, prompt_set, pipeline_type, progress
                    )
                    summary = get_variant(pipeline_type).aggregate(responses, project)
            except PersistenceError as e:
                logger.error(f"{pipeline_type.value} pipeline could not persist: {e}")
                get_metrics_collector().record_pipeline_run(pipeline_type.value, False)
                self._emit(
                    execution,
                    project,
                    EventType.PIPELINE_FAILED,
                    pipeline_type,
                    f"{pipeline_type.value} pipeline failed",
                    error=str(e),
                )
                raise
            except OrchestrationError as e:
                return await self._fail(execution, project, pipeline_type, e)
            except Exception as e:
                logger.exception(f"{pipeline_type.value} pipeline crashed: {e}")
                return await self._fail(execution, project, pipeline_type, e)

            result = await self.tracker.record_result(execution, pipeline_type, summary)
            get_metrics_collector().record_pipeline_run(pipeline_type.value, True)
            failed = sum(1 for r in responses if r.error)
            logger.info(
                f"{pipeline_type.value} pipeline completed",
                responses=len(responses),
                failed=failed,
            )
            self._emit(
                execution,
                project,
                EventType.PIPELINE_COMPLETED,
                pipeline_type,
                f"{pipeline_type.value} pipeline completed with {len(responses)} responses",
                progress=progress.percent,
            )
            return PipelineOutcome(pipeline_type, result, summary, responses)

    async def _dispatch_all(
        self,
        execution: BatchExecution,
        project: ProjectContext,
        prompt_set: PromptSet,
        pipeline_type: PipelineType,
        progress: ProgressCounter,
    ) -> list[RawResponse]:
        requests = self.plan(project, prompt_set, pipeline_type)

        async def settle(request: DispatchRequest) -> RawResponse:
            response = await self.dispatcher.dispatch(request, project)
            await self.raw_store.save(execution.id, response)
            percent = progress.advance()
            if percent is not None:
                self._emit(
                    execution,
                    project,
                    EventType.PIPELINE_PROGRESS,
                    pipeline_type,
                    f"{progress.settled}/{progress.total} calls settled",
                    progress=percent,
                )
            return response

        tasks = [asyncio.create_task(settle(request)) for request in requests]
        # Wait for every call even when one fails, so none is abandoned mid-flight
        settled = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in settled:
            if isinstance(outcome, BaseException):
                raise outcome

        return sorted(settled, key=lambda r: r.identity)

    async def _fail(
        self,
        execution: BatchExecution,
        project: ProjectContext,
        pipeline_type: PipelineType,
        error: BaseException,
    ) -> PipelineOutcome:
        message = str(error) or type(error).__name__
        logger.error(f"{pipeline_type.value} pipeline failed: {message}")
        get_metrics_collector().record_pipeline_run(pipeline_type.value, False)
        result = await self.tracker.record_result(execution, pipeline_type, {"error": message})
        self._emit(
            execution,
            project,
            EventType.PIPELINE_FAILED,
            pipeline_type,
            f"{pipeline_type.value} pipeline failed",
            error=message,
        )
        return PipelineOutcome(pipeline_type, result, error=message)

    def _emit(
        self,
        execution: BatchExecution,
        project: ProjectContext,
        event_type: EventType,
        pipeline_type: PipelineType,
        message: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None:
        self.publisher.emit(
            event_type,
            batch_execution_id=execution.id,
            project_id=project.project_id,
            project_name=project.display_name,
            pipeline_type=pipeline_type,
            message=message,
            progress=progress,
            error=error,
        )
