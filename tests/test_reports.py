"""
Tests for report snapshots built from batch executions.
"""

import logging
from unittest.mock import AsyncMock

import pytest

from brandlens.core.errors import ReportError
from brandlens.core.models import PipelineType, RawResponse, Report
from brandlens.core.reports import ReportGenerator
from brandlens.core.tracker import BatchExecutionTracker
from brandlens.storage.memory import (
    InMemoryExecutionStore,
    InMemoryRawResponseStore,
    InMemoryReportStore,
)


@pytest.fixture
def tracker():
    return BatchExecutionTracker(InMemoryExecutionStore(), config_fingerprint="f00d")


@pytest.fixture
def raw_store():
    return InMemoryRawResponseStore()


@pytest.fixture
def report_store():
    return InMemoryReportStore()


async def completed_execution(tracker, raw_store):
    """Sentiment succeeded on two models, comparison failed outright."""
    execution = await tracker.create("acme")
    for prompt_index in range(2):
        for model_index, model in enumerate(["model-a", "model-b"]):
            await raw_store.save(
                execution.id,
                RawResponse(
                    project_id="acme",
                    llm_provider="prov",
                    model=model,
                    pipeline_type=PipelineType.SENTIMENT,
                    prompt_index=prompt_index,
                    model_index=model_index,
                ),
            )
    await tracker.record_result(
        execution,
        PipelineType.SENTIMENT,
        {"overall_sentiment": "positive", "distribution": [{"name": "positive", "count": 4}]},
    )
    await tracker.record_result(execution, PipelineType.COMPARISON, {"error": "no prompts"})
    await tracker.complete(execution)
    return execution


class TestBuild:
    @pytest.mark.asyncio
    async def test_skips_error_payloads(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)
        generator = ReportGenerator(report_store, raw_store)

        report = await generator.build(execution)

        assert report.pipeline_types == (PipelineType.SENTIMENT,)
        assert set(report.metrics) == {"sentiment"}
        assert report.metrics["sentiment"]["overall_sentiment"] == "positive"
        assert report.metadata["models_used"] == ("prov/model-a", "prov/model-b")
        assert report.metadata["prompts_executed"] == 2
        assert report.metadata["config_fingerprint"] == "f00d"
        assert await report_store.get(report.id) is report

    @pytest.mark.asyncio
    async def test_report_is_deep_frozen(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)
        report = await ReportGenerator(report_store, raw_store).build(execution)

        with pytest.raises(TypeError):
            report.metrics["sentiment"]["overall_sentiment"] = "negative"
        with pytest.raises(AttributeError):
            report.metrics = {}
        assert isinstance(report.metrics["sentiment"]["distribution"], tuple)

    @pytest.mark.asyncio
    async def test_dict_form_is_plain_json(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)
        report = await ReportGenerator(report_store, raw_store).build(execution)

        data = report.to_dict()
        restored = Report.from_dict(data)

        assert data["metrics"]["sentiment"]["distribution"] == [{"name": "positive", "count": 4}]
        assert restored.to_dict() == data

    @pytest.mark.asyncio
    async def test_running_execution_rejected(self, tracker, raw_store, report_store):
        execution = await tracker.create("acme")

        with pytest.raises(ReportError, match="running"):
            await ReportGenerator(report_store, raw_store).build(execution)

    @pytest.mark.asyncio
    async def test_subset_without_usable_results(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)

        with pytest.raises(ReportError, match="no usable"):
            await ReportGenerator(report_store, raw_store).build(
                execution, pipeline_types=[PipelineType.COMPARISON]
            )


class TestNotification:
    @pytest.mark.asyncio
    async def test_automatic_generation_notifies(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)
        notifier = AsyncMock()

        report = await ReportGenerator(report_store, raw_store, notifier).generate_automatic(
            execution
        )

        notifier.report_ready.assert_awaited_once_with(report)

    @pytest.mark.asyncio
    async def test_manual_generation_does_not_notify(self, tracker, raw_store, report_store):
        execution = await completed_execution(tracker, raw_store)
        notifier = AsyncMock()

        await ReportGenerator(report_store, raw_store, notifier).generate_from_batch(execution)

        notifier.report_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notifier_failure_is_logged(self, tracker, raw_store, report_store, caplog):
        execution = await completed_execution(tracker, raw_store)
        notifier = AsyncMock()
        notifier.report_ready.side_effect = RuntimeError("smtp down")

        with caplog.at_level(logging.ERROR):
            report = await ReportGenerator(
                report_store, raw_store, notifier
            ).generate_automatic(execution)

        assert await report_store.get(report.id) is report
        assert "Report notification failed" in caplog.text
