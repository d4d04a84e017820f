"""
Global pytest configuration and shared fixtures.

Provides a scripted fake provider client, in-memory stores seeded with one
project, small-limit settings and an orchestrator factory. Global observability
state is reset around every test so metrics and cached settings never leak.
"""

import asyncio
import inspect
import json
from types import SimpleNamespace

import pytest

from brandlens.config.settings import (
    AnalyzerConfig,
    ConcurrencyConfig,
    ModelRef,
    ModelSlot,
    OrchestratorConfig,
    Settings,
    get_settings,
)
from brandlens.core.models import PipelineType, ProjectContext, PromptSet
from brandlens.core.orchestrator import BatchOrchestrator
from brandlens.observability.metrics import reset_metrics
from brandlens.providers.base import Completion
from brandlens.storage.memory import (
    InMemoryExecutionStore,
    InMemoryProjectStore,
    InMemoryPromptSetStore,
    InMemoryRawResponseStore,
    InMemoryReportStore,
)

PROMPTS = {
    PipelineType.SPONTANEOUS: (
        "What are the best hardware brands?",
        "Which tool makers do you trust?",
        "Who makes reliable anvils?",
    ),
    PipelineType.SENTIMENT: (
        "What do people think of {BRAND}?",
        "Is {BRAND} a reputable company?",
    ),
    PipelineType.COMPARISON: (
        "{BRAND} vs {COMPETITOR}: which is better?",
        "Compare {BRAND} with {COMPETITORS}.",
    ),
    PipelineType.ACCURACY: ("How would you describe {BRAND}?",),
}


def reply(prose: str = "Here is my answer.", **fields) -> str:
    """Provider reply text: prose followed by a fenced JSON block."""
    return f"{prose}\n\n```json\n{json.dumps(fields)}\n```"


def default_reply(identity, system_prompt, user_prompt):
    return reply(
        "Acme and Globex are popular choices.",
        top_of_mind=["Acme", "Globex"],
        sentiment="positive",
        accuracy=0.8,
        winner="Acme",
        differentiators=["price", "durability"],
        attribute_scores={"durable": 0.9, "affordable": 0.5},
    )


class FakeProviderClient:
    """Scripted ``ModelProviderClient``.

    ``handler(identity, system_prompt, user_prompt)`` returns reply text or a
    ``Completion``; it may be a coroutine function and may raise.
    """

    def __init__(self, handler=None, delay: float = 0.0):
        self.handler = handler or default_reply
        self.delay = delay
        self.calls: list[SimpleNamespace] = []
        self.in_flight = 0
        self.peak = 0

    async def complete(
        self,
        system_prompt,
        user_prompt,
        model,
        timeout,
        *,
        temperature=None,
        max_tokens=None,
    ):
        self.calls.append(
            SimpleNamespace(
                model=model,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                timeout=timeout,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        )
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.handler(model, system_prompt, user_prompt)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, Completion):
                return result
            return Completion(text=result)
        finally:
            self.in_flight -= 1


def make_settings(**overrides) -> Settings:
    """Two model slots (A, B), fallback C, small gate limits."""
    values = {
        "concurrency": ConcurrencyConfig(
            concurrency_limit=4,
            pipeline_limits={
                PipelineType.SPONTANEOUS: 3,
                PipelineType.SENTIMENT: 2,
                PipelineType.COMPARISON: 2,
                PipelineType.ACCURACY: 1,
            },
        ),
        "models": [
            ModelSlot(id="a", provider="prov-a", model="model-a"),
            ModelSlot(id="b", provider="prov-b", model="model-b", temperature=0.2, max_tokens=256),
        ],
        "analyzer_config": {
            pipeline_type: AnalyzerConfig(fallback=ModelRef(provider="prov-c", model="model-c"))
            for pipeline_type in PipelineType
        },
        "orchestrator": OrchestratorConfig(provider_timeout=1.0),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation of global metrics and cached settings."""
    reset_metrics()
    get_settings.cache_clear()
    yield
    reset_metrics()
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def project():
    return ProjectContext(
        project_id="acme",
        brand_name="Acme",
        project_name="Acme Launch",
        competitors=("Globex", "Initech"),
        key_attributes=("durable", "affordable"),
        website_url="https://acme.example",
    )


@pytest.fixture
def prompt_set():
    return PromptSet(project_id="acme", prompts=dict(PROMPTS), version=3)


@pytest.fixture
def fake_client():
    return FakeProviderClient()


@pytest.fixture
def stores(project, prompt_set):
    return SimpleNamespace(
        prompt_sets=InMemoryPromptSetStore([prompt_set]),
        projects=InMemoryProjectStore([project]),
        executions=InMemoryExecutionStore(),
        raw_responses=InMemoryRawResponseStore(),
        reports=InMemoryReportStore(),
    )


@pytest.fixture
def make_orchestrator(settings, fake_client, stores):
    """Factory building an orchestrator over the shared stores."""

    def factory(settings=settings, client=fake_client, **kwargs):
        return BatchOrchestrator(
            settings=settings,
            client=client,
            prompt_sets=stores.prompt_sets,
            projects=stores.projects,
            executions=kwargs.pop("executions", stores.executions),
            raw_responses=kwargs.pop("raw_responses", stores.raw_responses),
            reports=stores.reports,
            **kwargs,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
