"""
Model dispatch: one (prompt, model slot, run) call with a single fallback retry.
"""

import asyncio
import time
from dataclasses import dataclass

from ..config.settings import ModelRef, ModelSlot, Settings
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..providers.base import Completion, ModelProviderClient
from .errors import ProviderError, ProviderTimeoutError
from .gate import ConcurrencyGate
from .models import ModelIdentity, PipelineType, ProjectContext, RawResponse
from .pipelines import PromptShape, get_variant

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    """One unit of provider work within a pipeline."""

    pipeline_type: PipelineType
    prompt_index: int
    prompt: str
    slot: ModelSlot
    model_index: int
    run_index: int = 0

    @property
    def identity(self) -> tuple[int, int, int]:
        return (self.prompt_index, self.model_index, self.run_index)


class ModelDispatcher:
    """Calls the slot's model, then the fallback model once, then gives up.

    One gate permit covers both attempts. Provider failures never escape: the
    result of a dispatch is always a RawResponse, carrying ``error`` and the
    pipeline's neutral values when both attempts failed. Anything that is not a
    ``ProviderError`` is a bug and propagates.
    """

    def __init__(self, client: ModelProviderClient, gate: ConcurrencyGate, settings: Settings):
        self.client = client
        self.gate = gate
        self.settings = settings
        self.timeout = settings.orchestrator.provider_timeout

    def fallback_for(self, request: DispatchRequest) -> ModelRef:
        return request.slot.fallback or self.settings.analyzer_for(request.pipeline_type).fallback

    async def dispatch(self, request: DispatchRequest, project: ProjectContext) -> RawResponse:
        variant = get_variant(request.pipeline_type)
        shape = variant.prompt_shape(request.prompt, project)
        metrics = get_metrics_collector()

        identity = request.slot.identity
        used_fallback = False
        async with self.gate.slot(request.pipeline_type):
            try:
                completion = await self._call(shape, identity, request.slot)
            except ProviderError as primary_error:
                used_fallback = True
                identity = self.fallback_for(request).identity
                metrics.increment(
                    "fallbacks_total", attributes={"pipeline_type": request.pipeline_type.value}
                )
                logger.warning(
                    f"Primary {request.slot.identity} failed, trying fallback {identity}: {primary_error}",
                    prompt_index=request.prompt_index,
                    model_index=request.model_index,
                    run_index=request.run_index,
                )
                try:
                    completion = await self._call(shape, identity, request.slot)
                except ProviderError as fallback_error:
                    metrics.increment(
                        "responses_failed_total",
                        attributes={"pipeline_type": request.pipeline_type.value},
                    )
                    logger.error(
                        f"Fallback {identity} also failed: {fallback_error}",
                        prompt_index=request.prompt_index,
                        model_index=request.model_index,
                        run_index=request.run_index,
                    )
                    response = self._response(request, project, identity, used_fallback)
                    for name, value in variant.neutral_fields(project).items():
                        setattr(response, name, value)
                    response.error = str(fallback_error)
                    return response

        response = self._response(request, project, identity, used_fallback)
        response.response_text = completion.text
        response.citations = completion.citations
        response.tool_usage = completion.tool_usage
        response.used_web_search = completion.used_web_search

        extraction = variant.parse(completion.text, project)
        for name, value in extraction.fields.items():
            setattr(response, name, value)
        response.malformed_fields = list(extraction.malformed)
        if extraction.malformed:
            logger.warning(
                f"Malformed fields in reply from {identity}: {', '.join(extraction.malformed)}",
                prompt_index=request.prompt_index,
                model_index=request.model_index,
            )
        return response

    async def _call(self, shape: PromptShape, identity: ModelIdentity, slot: ModelSlot) -> Completion:
        started = time.perf_counter()
        success = False
        try:
            with probe("dispatcher.call", provider=identity.provider, model=identity.model):
                completion = await asyncio.wait_for(
                    self.client.complete(
                        shape.system_prompt,
                        shape.user_prompt,
                        identity,
                        self.timeout,
                        temperature=slot.temperature,
                        max_tokens=slot.max_tokens,
                    ),
                    timeout=self.timeout,
                )
            success = True
            return completion
        except TimeoutError as e:
            raise ProviderTimeoutError(
                f"{identity} timed out after {self.timeout}s",
                provider=identity.provider,
                model=identity.model,
            ) from e
        finally:
            get_metrics_collector().record_provider_call(
                identity.provider, identity.model, time.perf_counter() - started, success
            )

    @staticmethod
    def _response(
        request: DispatchRequest,
        project: ProjectContext,
        identity: ModelIdentity,
        used_fallback: bool,
    ) -> RawResponse:
        return RawResponse(
            project_id=project.project_id,
            llm_provider=identity.provider,
            model=identity.model,
            pipeline_type=request.pipeline_type,
            prompt_index=request.prompt_index,
            model_index=request.model_index,
            run_index=request.run_index,
            used_fallback=used_fallback,
        )
