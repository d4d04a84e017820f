"""
Report snapshots built from completed batch executions.

A report copies the pipeline summaries of one execution into a deep-frozen
structure. It is saved once and never rewritten; later runs of the same
project produce new reports instead.
"""

import uuid
from collections.abc import Iterable

from ..observability.logging import get_logger
from ..observability.metrics import timer
from ..observability.probe import probe
from ..observability.tracing import trace_span
from ..storage.base import RawResponseStore, ReportNotifier, ReportStore
from .errors import ReportError
from .models import BatchExecution, ExecutionStatus, PipelineType, Report, freeze, utcnow

logger = get_logger(__name__)


class ReportGenerator:
    """Builds, stores and optionally announces reports."""

    def __init__(
        self,
        store: ReportStore,
        raw_store: RawResponseStore,
        notifier: ReportNotifier | None = None,
    ):
        self.store = store
        self.raw_store = raw_store
        self.notifier = notifier

    @trace_span("reports.build")
    async def build(
        self,
        execution: BatchExecution,
        pipeline_types: Iterable[PipelineType] | None = None,
    ) -> Report:
        """Snapshot the usable results of a completed execution.

        Pipelines whose payload is an error are left out. Raises ``ReportError``
        when the execution is not completed or no usable result remains.
        """
        if execution.status is not ExecutionStatus.COMPLETED:
            raise ReportError(
                f"Batch execution {execution.id} is {execution.status.value}, not completed"
            )

        wanted = {PipelineType(t) for t in pipeline_types} if pipeline_types is not None else None
        results = [
            result
            for result in execution.final_results
            if (wanted is None or result.pipeline_type in wanted) and not result.is_error
        ]
        if not results:
            raise ReportError(f"Batch execution {execution.id} has no usable pipeline results")

        included = tuple(result.pipeline_type for result in results)
        with timer("report_collect_seconds", {"pipelines": str(len(included))}):
            responses = [
                r
                for r in await self.raw_store.list_for_execution(execution.id)
                if r.pipeline_type in included
            ]

        report = Report(
            id=str(uuid.uuid4()),
            project_id=execution.project_id,
            batch_execution_id=execution.id,
            generated_at=utcnow(),
            pipeline_types=included,
            metrics=freeze({result.pipeline_type.value: result.summary() for result in results}),
            metadata=freeze(
                {
                    "models_used": sorted({r.model_identity.label for r in responses}),
                    "prompts_executed": len({(r.pipeline_type, r.prompt_index) for r in responses}),
                    "config_fingerprint": execution.config_fingerprint,
                }
            ),
        )
        with probe("reports.save", report_id=report.id):
            await self.store.save(report)
        logger.info(
            "Report generated",
            report_id=report.id,
            execution_id=execution.id,
            pipelines=",".join(t.value for t in included),
        )
        return report

    async def generate_from_batch(self, execution: BatchExecution) -> Report:
        """Manual generation; no notification is sent."""
        return await self.build(execution)

    async def generate_automatic(self, execution: BatchExecution) -> Report:
        """Generation after a full batch, followed by the notifier side effect."""
        report = await self.build(execution)
        if self.notifier is not None:
            try:
                await self.notifier.report_ready(report)
            except Exception as e:
                logger.error(f"Report notification failed: {e}", report_id=report.id)
        return report
