"""
Batch execution tracking with a forward-only status machine.

    running --complete--> completed
    running --fail------> failed

Both end states are terminal: once there, an execution accepts no writes. Each
mutation is committed through the execution store; when the store fails, the
in-memory record is rolled back to the last committed state so callers never
observe a status or result that was not persisted.
"""

import asyncio
import json
import uuid
from collections.abc import Mapping
from typing import Any

from ..observability.logging import get_logger
from ..storage.base import ExecutionStore
from .errors import (
    ExecutionNotFoundError,
    InvalidTransitionError,
    PersistenceError,
    TerminalStateError,
)
from .models import BatchExecution, BatchResult, ExecutionStatus, PipelineType, utcnow

logger = get_logger(__name__)

_ORDER = {pipeline_type: i for i, pipeline_type in enumerate(PipelineType)}

TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


def serialize_summary(summary: Any) -> str:
    """Canonical JSON payload for a summary object or mapping."""
    if isinstance(summary, str):
        return summary
    if hasattr(summary, "to_json"):
        return summary.to_json()
    if isinstance(summary, Mapping):
        return json.dumps(dict(summary), sort_keys=True, separators=(",", ":"), default=str)
    raise TypeError(f"Cannot serialize summary of type {type(summary).__name__}")


class BatchExecutionTracker:
    """Creates executions and applies result writes and status transitions."""

    def __init__(self, store: ExecutionStore, config_fingerprint: str = ""):
        self.store = store
        self.config_fingerprint = config_fingerprint
        # Concurrent pipelines of one batch share the record; commits are serialized
        self._lock = asyncio.Lock()

    async def create(self, project_id: str) -> BatchExecution:
        execution = BatchExecution(
            id=str(uuid.uuid4()),
            project_id=project_id,
            config_fingerprint=self.config_fingerprint,
        )
        await self._commit(execution, snapshot=None)
        logger.info("Batch execution created", execution_id=execution.id, project_id=project_id)
        return execution

    async def record_result(
        self, execution: BatchExecution, pipeline_type: PipelineType, summary: Any
    ) -> BatchResult:
        """Insert or replace the result for ``pipeline_type``."""
        result = BatchResult(pipeline_type=pipeline_type, payload=serialize_summary(summary))
        async with self._lock:
            self._ensure_writable(execution)
            snapshot = execution.to_dict()
            execution.final_results = [
                r for r in execution.final_results if r.pipeline_type is not pipeline_type
            ]
            execution.final_results.append(result)
            execution.final_results.sort(key=lambda r: _ORDER[r.pipeline_type])
            await self._commit(execution, snapshot)
        return result

    async def complete(self, execution: BatchExecution) -> BatchExecution:
        return await self._transition(execution, ExecutionStatus.COMPLETED)

    async def fail(self, execution: BatchExecution, error: str) -> BatchExecution:
        return await self._transition(execution, ExecutionStatus.FAILED, error)

    async def get(self, execution_id: str) -> BatchExecution:
        execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Batch execution {execution_id} not found")
        return execution

    async def list_for_project(self, project_id: str) -> list[BatchExecution]:
        """Executions of a project, newest first."""
        return await self.store.list_for_project(project_id)

    @staticmethod
    def _ensure_writable(execution: BatchExecution) -> None:
        if execution.is_terminal:
            raise TerminalStateError(
                f"Batch execution {execution.id} is {execution.status.value}; no further writes"
            )

    async def _transition(
        self, execution: BatchExecution, target: ExecutionStatus, error: str | None = None
    ) -> BatchExecution:
        async with self._lock:
            if target not in TRANSITIONS[execution.status]:
                if execution.is_terminal:
                    raise TerminalStateError(
                        f"Batch execution {execution.id} is already {execution.status.value}"
                    )
                raise InvalidTransitionError(
                    f"Cannot move batch execution {execution.id} from "
                    f"{execution.status.value} to {target.value}"
                )

            snapshot = execution.to_dict()
            execution.status = target
            execution.completed_at = utcnow()
            if error is not None:
                execution.error = error
            await self._commit(execution, snapshot)
        logger.info(
            f"Batch execution {target.value}",
            execution_id=execution.id,
            results=len(execution.final_results),
        )
        return execution

    async def _commit(self, execution: BatchExecution, snapshot: dict[str, Any] | None) -> None:
        try:
            await self.store.save(execution)
        except Exception as e:
            if snapshot is not None:
                restored = BatchExecution.from_dict(snapshot)
                execution.__dict__.update(restored.__dict__)
            logger.error(f"Failed to persist batch execution: {e}", execution_id=execution.id)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to persist batch execution {execution.id}: {e}") from e
