"""
Command line entry point: run batches against configured providers.

    brandlens run --project-file project.json [--pipeline TYPE] [--report]
    brandlens executions --project-id ID
    brandlens --version

A project file holds the project facts and its prompt set::

    {
      "project": {"project_id": "acme", "brand_name": "Acme", "competitors": ["Globex"]},
      "prompts": {"spontaneous": ["What are the best ... brands?"], "sentiment": [...]},
      "version": 1
    }
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider

from . import __version__
from .config.container import Container, setup_container
from .config.settings import Settings, get_settings
from .core.errors import BrandLensError
from .core.models import PipelineType, ProjectContext, PromptSet
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_metrics
from .observability.tracing import setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="brandlens", description="Batch brand perception analysis")
    parser.add_argument("--version", action="store_true", help="Show version")
    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Run a full batch or a single pipeline")
    run.add_argument("--project-file", required=True, type=Path, help="Project and prompt set JSON")
    run.add_argument(
        "--pipeline",
        choices=[t.value for t in PipelineType],
        help="Run only this pipeline type",
    )
    run.add_argument("--report", action="store_true", help="Generate a report after the run")

    executions = commands.add_parser("executions", help="List batch executions of a project")
    executions.add_argument("--project-id", required=True)

    return parser


def load_project_file(path: Path) -> tuple[ProjectContext, PromptSet]:
    data = json.loads(path.read_text(encoding="utf-8"))
    project = ProjectContext.from_dict(data["project"])
    prompt_set = PromptSet.from_dict(
        project.project_id, data.get("prompts", {}), version=data.get("version", 1)
    )
    return project, prompt_set


def init_observability(settings: Settings) -> None:
    setup_logging(settings.observability.log_level)
    if settings.observability.enable_metrics:
        provider = MeterProvider()
        metrics.set_meter_provider(provider)
        setup_metrics(provider.get_meter(settings.observability.service_name))
    if settings.observability.enable_tracing:
        setup_tracing(
            settings.observability.service_name,
            settings.observability.service_version,
            settings.observability.otlp_endpoint,
        )


async def run_command(container: Container, args: argparse.Namespace) -> dict[str, Any]:
    project, prompt_set = load_project_file(args.project_file)
    await container.get("project_store").save(project)
    await container.get("prompt_set_store").save(prompt_set)

    async with container.lifespan():
        await container.get_async("provider_client")
        orchestrator = container.get("orchestrator")

        if args.pipeline:
            outcome = await orchestrator.run_pipeline(project.project_id, args.pipeline)
            output = outcome.to_dict()
            report_id = None
        else:
            batch = await orchestrator.run_full_batch(project.project_id)
            output = batch.to_dict()
            report_id = output["report_id"]

        if args.report and report_id is None:
            report = await orchestrator.generate_report_from_batch(output["batch_execution_id"])
            output["report_id"] = report.id
        return output


async def executions_command(container: Container, args: argparse.Namespace) -> list[dict[str, Any]]:
    executions = await container.get("execution_store").list_for_project(args.project_id)
    return [
        {
            "id": e.id,
            "status": e.status.value,
            "executed_at": e.executed_at.isoformat(),
            "pipelines": [r.pipeline_type.value for r in e.final_results],
            "error": e.error,
        }
        for e in executions
    ]


def main(argv=None) -> int:
    """Parse arguments and run the selected command; returns the exit code."""
    parser = build_parser()
    # Use empty list if no argv provided to avoid pytest argument conflicts
    args = parser.parse_args([] if argv is None else argv)

    if args.version:
        print(f"BrandLens v{__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    init_observability(settings)
    container = setup_container(settings)

    try:
        if args.command == "run":
            output = asyncio.run(run_command(container, args))
        else:
            output = asyncio.run(executions_command(container, args))
    except BrandLensError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


def cli_main():
    """Console script entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nBrandLens interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli_main()
