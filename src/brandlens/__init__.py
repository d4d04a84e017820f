"""
BrandLens: batch analysis orchestration for multi-model brand perception.

Runs four analysis pipelines (spontaneous mention, sentiment, competitive
comparison and attribute alignment) over a project's prompt set against many
language-model providers at once, with admission control, a single fallback
retry per call, deterministic aggregation, tracked execution state and live
progress events.

Quick Start:
    >>> from brandlens.config import setup_container
    >>>
    >>> container = setup_container()
    >>> async with container.lifespan():
    ...     await container.get_async("provider_client")
    ...     orchestrator = container.get("orchestrator")
    ...     result = await orchestrator.run_full_batch("acme")
    ...     print(result.results["spontaneous"]["mention_rate"])

Configuration:
    Environment variables with the ``BL_`` prefix, e.g.
    - BL_CONCURRENCY__CONCURRENCY_LIMIT=100
    - BL_PROVIDERS__OPENAI__API_KEY=sk-...
    - BL_ORCHESTRATOR__PROVIDER_TIMEOUT=60
    - BL_OBSERVABILITY__LOG_LEVEL=INFO
"""

__version__ = "0.1.0"

from .config.settings import Settings
from .core.models import PipelineType
from .core.orchestrator import BatchOrchestrator

__all__ = ["BatchOrchestrator", "PipelineType", "Settings", "__version__"]
