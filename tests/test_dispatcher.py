"""
Tests for model dispatch: primary call, single fallback retry, timeouts and
neutral values when both attempts fail.
"""

import asyncio

import pytest
from conftest import FakeProviderClient, make_settings, reply

from brandlens.config.settings import ModelRef, ModelSlot, OrchestratorConfig
from brandlens.core.dispatcher import DispatchRequest, ModelDispatcher
from brandlens.core.errors import ProviderError
from brandlens.core.gate import ConcurrencyGate
from brandlens.core.models import PipelineType
from brandlens.observability.metrics import get_metrics_collector
from brandlens.providers.base import Completion


def make_dispatcher(client, settings=None):
    settings = settings or make_settings()
    return ModelDispatcher(client, ConcurrencyGate.from_config(settings.concurrency), settings)


def request_for(settings, pipeline_type=PipelineType.SPONTANEOUS, prompt_index=0, model_index=0):
    return DispatchRequest(
        pipeline_type=pipeline_type,
        prompt_index=prompt_index,
        prompt="Who makes reliable anvils?",
        slot=settings.models[model_index],
        model_index=model_index,
    )


class TestPrimaryCall:
    """Successful primary calls."""

    @pytest.mark.asyncio
    async def test_records_primary_identity_and_fields(self, settings, project):
        client = FakeProviderClient(
            lambda identity, system, user: Completion(
                text=reply("Acme is great.", top_of_mind=["Acme", "Globex"]),
                citations=[{"url": "https://www.acme.example/about"}],
                used_web_search=True,
            )
        )
        dispatcher = make_dispatcher(client, settings)

        response = await dispatcher.dispatch(request_for(settings, model_index=1), project)

        assert (response.llm_provider, response.model) == ("prov-b", "model-b")
        assert response.identity == (0, 1, 0)
        assert not response.used_fallback
        assert response.error is None
        assert response.mentioned is True
        assert response.top_of_mind == ["Acme", "Globex"]
        assert response.citations == [{"url": "https://www.acme.example/about"}]
        assert response.used_web_search is True

    @pytest.mark.asyncio
    async def test_passes_slot_sampling_parameters(self, settings, project):
        client = FakeProviderClient()
        dispatcher = make_dispatcher(client, settings)

        await dispatcher.dispatch(request_for(settings, model_index=1), project)

        call = client.calls[0]
        assert call.temperature == 0.2
        assert call.max_tokens == 256
        assert call.timeout == settings.orchestrator.provider_timeout

    @pytest.mark.asyncio
    async def test_malformed_reply_is_flagged(self, settings, project):
        client = FakeProviderClient(lambda identity, system, user: "I'd rather not say.")
        dispatcher = make_dispatcher(client, settings)

        response = await dispatcher.dispatch(
            request_for(settings, pipeline_type=PipelineType.SENTIMENT), project
        )

        assert response.error is None
        assert response.sentiment is None
        assert response.is_malformed("sentiment")
        assert response.accuracy == 0.0


class TestFallback:
    """One fallback attempt per failed primary."""

    @pytest.mark.asyncio
    async def test_primary_failure_records_fallback_identity(self, settings, project):
        def handler(identity, system, user):
            if identity.model == "model-a":
                raise ProviderError("HTTP 503", provider=identity.provider, model=identity.model)
            return reply("Acme, mostly.", top_of_mind=["Acme"])

        client = FakeProviderClient(handler)
        dispatcher = make_dispatcher(client, settings)

        response = await dispatcher.dispatch(request_for(settings), project)

        assert (response.llm_provider, response.model) == ("prov-c", "model-c")
        assert response.used_fallback
        assert response.error is None
        assert response.mentioned is True
        assert [c.model.model for c in client.calls] == ["model-a", "model-c"]
        assert get_metrics_collector().get_summary()["fallbacks_total"] == 1

    @pytest.mark.asyncio
    async def test_slot_fallback_overrides_analyzer_fallback(self, project):
        settings = make_settings(
            models=[
                ModelSlot(
                    id="a",
                    provider="prov-a",
                    model="model-a",
                    fallback=ModelRef(provider="prov-d", model="model-d"),
                )
            ]
        )

        def handler(identity, system, user):
            if identity.model == "model-a":
                raise ProviderError("down")
            return reply(top_of_mind=[])

        dispatcher = make_dispatcher(FakeProviderClient(handler), settings)

        response = await dispatcher.dispatch(request_for(settings), project)

        assert response.model_identity.label == "prov-d/model-d"

    @pytest.mark.asyncio
    async def test_timeout_then_fallback_succeeds(self, project):
        settings = make_settings(orchestrator=OrchestratorConfig(provider_timeout=0.05))

        async def handler(identity, system, user):
            if identity.model == "model-b":
                await asyncio.sleep(5)
            return reply("Acme leads.", top_of_mind=["Acme"])

        dispatcher = make_dispatcher(FakeProviderClient(handler), settings)

        response = await dispatcher.dispatch(
            request_for(settings, prompt_index=1, model_index=1), project
        )

        assert response.identity == (1, 1, 0)
        assert (response.llm_provider, response.model) == ("prov-c", "model-c")
        assert response.error is None
        assert response.mentioned is True

    @pytest.mark.asyncio
    async def test_both_time_out_records_error_and_neutral_values(self, project):
        settings = make_settings(orchestrator=OrchestratorConfig(provider_timeout=0.05))

        async def handler(identity, system, user):
            if identity.model in ("model-b", "model-c"):
                await asyncio.sleep(5)
            return reply("Acme leads.", top_of_mind=["Acme"])

        dispatcher = make_dispatcher(FakeProviderClient(handler), settings)

        response = await dispatcher.dispatch(
            request_for(settings, prompt_index=1, model_index=1), project
        )

        assert response.model == "model-c"
        assert response.used_fallback
        assert "timed out" in response.error
        assert response.mentioned is False
        assert response.top_of_mind == []
        assert dispatcher.gate.in_flight() == 0
        assert get_metrics_collector().get_summary()["responses_failed_total"] == 1

    @pytest.mark.asyncio
    async def test_neutral_values_per_pipeline(self, settings, project):
        def handler(identity, system, user):
            raise ProviderError("unavailable")

        dispatcher = make_dispatcher(FakeProviderClient(handler), settings)

        sentiment = await dispatcher.dispatch(
            request_for(settings, pipeline_type=PipelineType.SENTIMENT), project
        )
        comparison = await dispatcher.dispatch(
            request_for(settings, pipeline_type=PipelineType.COMPARISON), project
        )
        accuracy = await dispatcher.dispatch(
            request_for(settings, pipeline_type=PipelineType.ACCURACY), project
        )

        assert (sentiment.sentiment, sentiment.accuracy) == ("neutral", 0.0)
        assert (comparison.winner, comparison.differentiators) == ("", [])
        assert accuracy.attribute_scores == {"durable": 0.0, "affordable": 0.0}
        assert all(r.error == "unavailable" for r in (sentiment, comparison, accuracy))

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate_and_release_permit(self, settings, project):
        def handler(identity, system, user):
            raise KeyError("bug")

        dispatcher = make_dispatcher(FakeProviderClient(handler), settings)

        with pytest.raises(KeyError):
            await dispatcher.dispatch(request_for(settings), project)

        assert dispatcher.gate.in_flight() == 0
