"""
Dependency injection container wiring the engine's collaborators from settings.

Factories are registered by name and instantiated lazily on first ``get``;
async resources (the HTTP provider client) are entered on ``get_async`` and
closed by ``cleanup``.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}
        self._async_resources: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory called with the container on first use."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def get_async(self, name: str, default: Any = None) -> Any:
        """Get a service, entering it first if it is an async context manager."""
        if name in self._async_resources:
            return self._async_resources[name]

        service = self.get(name, default)
        if hasattr(service, "__aenter__"):
            entered = await service.__aenter__()
            self._async_resources[name] = entered
            return entered

        return service

    async def cleanup(self) -> None:
        """Close every entered async resource."""
        for name, resource in self._async_resources.items():
            if hasattr(resource, "__aexit__"):
                try:
                    await resource.__aexit__(None, None, None)
                except Exception as e:
                    logger.warning(f"Error cleaning up {name}: {e}")

        self._async_resources.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Container with the default local-file backends and HTTP provider client."""
    container = Container(settings)

    def _local_store_factory(c: Container):
        from ..storage.local import LocalStore

        return LocalStore(c.settings.storage.data_directory)

    def _provider_client_factory(c: Container):
        from ..providers.http import HttpModelProviderClient

        return HttpModelProviderClient(
            c.settings.providers, max_connections=c.settings.concurrency.concurrency_limit
        )

    def _publisher_factory(c: Container):
        from ..core.events import EventPublisher

        return EventPublisher(
            channel=c.get("notification_channel"),
            queue_size=c.settings.orchestrator.subscriber_queue_size,
        )

    def _store_factory(cls_name: str):
        def factory(c: Container):
            from ..storage import local

            return getattr(local, cls_name)(c.get("local_store"))

        return factory

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import BatchOrchestrator

        return BatchOrchestrator(
            settings=c.settings,
            client=c.get("provider_client"),
            prompt_sets=c.get("prompt_set_store"),
            projects=c.get("project_store"),
            executions=c.get("execution_store"),
            raw_responses=c.get("raw_response_store"),
            reports=c.get("report_store"),
            publisher=c.get("publisher"),
            notifier=c.get("report_notifier"),
        )

    container.register_factory("local_store", _local_store_factory)
    container.register_factory("provider_client", _provider_client_factory)
    container.register_factory("publisher", _publisher_factory)
    container.register_factory("prompt_set_store", _store_factory("LocalPromptSetStore"))
    container.register_factory("project_store", _store_factory("LocalProjectStore"))
    container.register_factory("execution_store", _store_factory("LocalExecutionStore"))
    container.register_factory("raw_response_store", _store_factory("LocalRawResponseStore"))
    container.register_factory("report_store", _store_factory("LocalReportStore"))
    container.register_factory("orchestrator", _orchestrator_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
