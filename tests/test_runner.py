"""
Tests for pipeline planning, progress accounting and single pipeline runs.
"""

import pytest
from conftest import FakeProviderClient, make_settings

from brandlens.config.settings import AnalyzerConfig, ModelRef
from brandlens.core.dispatcher import ModelDispatcher
from brandlens.core.errors import ConfigurationError, PersistenceError, PromptSetNotFoundError
from brandlens.core.events import EventPublisher
from brandlens.core.gate import ConcurrencyGate
from brandlens.core.models import EventType, PipelineType, ProjectContext, PromptSet
from brandlens.core.runner import PipelineRunner, ProgressCounter, resolve_slots
from brandlens.core.tracker import BatchExecutionTracker
from brandlens.storage.memory import InMemoryExecutionStore, InMemoryRawResponseStore


def make_runner(settings, client=None, raw_store=None, publisher=None):
    gate = ConcurrencyGate.from_config(settings.concurrency)
    dispatcher = ModelDispatcher(client or FakeProviderClient(), gate, settings)
    tracker = BatchExecutionTracker(InMemoryExecutionStore())
    runner = PipelineRunner(
        dispatcher,
        tracker,
        raw_store or InMemoryRawResponseStore(),
        publisher or EventPublisher(),
        settings,
    )
    return runner, tracker


class FailingRawResponseStore(InMemoryRawResponseStore):
    async def save(self, execution_id, response):
        raise PersistenceError("disk full")


class TestProgressCounter:
    def test_reports_only_changes(self):
        progress = ProgressCounter(300)

        assert progress.advance() is None
        assert progress.advance() is None
        assert progress.advance() == 1
        assert progress.percent == 1

    def test_reaches_one_hundred(self):
        progress = ProgressCounter(4)

        assert [progress.advance() for _ in range(4)] == [25, 50, 75, 100]

    def test_empty_plan_is_complete(self):
        assert ProgressCounter(0).percent == 100


class TestResolveSlots:
    def test_enabled_slots(self, settings, project):
        assert [slot.id for slot in resolve_slots(settings, project)] == ["a", "b"]

    def test_project_restriction(self, settings):
        project = ProjectContext(project_id="p", brand_name="Acme", enabled_models=("b",))

        assert [slot.id for slot in resolve_slots(settings, project)] == ["b"]

    def test_restriction_matching_nothing(self, settings):
        project = ProjectContext(project_id="p", brand_name="Acme", enabled_models=("zzz",))

        with pytest.raises(ConfigurationError, match="zzz"):
            resolve_slots(settings, project)

    def test_analyzer_primary_when_no_models_configured(self, project):
        settings = make_settings(
            models=[],
            analyzer_config={
                PipelineType.SPONTANEOUS: AnalyzerConfig(
                    primary=ModelRef(provider="prov-p", model="model-p")
                )
            },
        )

        slots = resolve_slots(settings, project)

        assert [(s.provider, s.model) for s in slots] == [("prov-p", "model-p")]


class TestPlan:
    def test_dispatch_order_and_runs(self, project, prompt_set):
        settings = make_settings(
            analyzer_config={t: AnalyzerConfig(runs_per_model=2) for t in PipelineType}
        )
        runner, _ = make_runner(settings)

        spontaneous = runner.plan(project, prompt_set, PipelineType.SPONTANEOUS)
        sentiment = runner.plan(project, prompt_set, PipelineType.SENTIMENT)

        assert len(spontaneous) == 3 * 2 * 2
        assert [r.identity for r in spontaneous[:4]] == [(0, 0, 0), (0, 0, 1), (0, 1, 0), (0, 1, 1)]
        # runs_per_model applies to spontaneous only
        assert len(sentiment) == 2 * 2
        assert {r.run_index for r in sentiment} == {0}

    def test_empty_type(self, settings, project):
        runner, _ = make_runner(settings)
        prompt_set = PromptSet(project_id="acme", prompts={})

        with pytest.raises(PromptSetNotFoundError):
            runner.plan(project, prompt_set, PipelineType.ACCURACY)
        assert runner.count_calls(project, prompt_set, PipelineType.ACCURACY) == 0


class TestRun:
    @pytest.mark.asyncio
    async def test_successful_run_records_result_and_events(self, settings, project, prompt_set):
        publisher = EventPublisher()
        raw_store = InMemoryRawResponseStore()
        runner, tracker = make_runner(settings, raw_store=raw_store, publisher=publisher)
        execution = await tracker.create("acme")
        subscription = publisher.subscribe(execution.id)
        progress = ProgressCounter(runner.count_calls(project, prompt_set, PipelineType.SPONTANEOUS))

        outcome = await runner.run(execution, project, prompt_set, PipelineType.SPONTANEOUS, progress)

        assert outcome.succeeded
        assert outcome.result.summary()["mention_rate"] == 1.0
        assert [r.identity for r in outcome.responses] == sorted(r.identity for r in outcome.responses)
        assert len(await raw_store.list_for_execution(execution.id)) == 6
        assert execution.result_for(PipelineType.SPONTANEOUS) is outcome.result

        events = subscription.drain()
        types = [e.event_type for e in events]
        assert types[0] is EventType.PIPELINE_STARTED
        assert types[-1] is EventType.PIPELINE_COMPLETED
        assert types.count(EventType.PIPELINE_PROGRESS) == 6
        assert events[-2].progress == 100

    @pytest.mark.asyncio
    async def test_unstorable_response_propagates(self, settings, project, prompt_set):
        publisher = EventPublisher()
        runner, tracker = make_runner(
            settings, raw_store=FailingRawResponseStore(), publisher=publisher
        )
        execution = await tracker.create("acme")
        subscription = publisher.subscribe(execution.id)

        with pytest.raises(PersistenceError, match="disk full"):
            await runner.run(
                execution, project, prompt_set, PipelineType.SENTIMENT, ProgressCounter(4)
            )

        assert (await tracker.get(execution.id)).final_results == []
        last = subscription.drain()[-1]
        assert last.event_type is EventType.PIPELINE_FAILED
        assert last.error == "disk full"
