"""
Configuration for the batch engine, loaded with pydantic-settings.

Every value can be overridden from the environment with the ``BL_`` prefix and
``__`` as the nested delimiter, e.g. ``BL_CONCURRENCY__CONCURRENCY_LIMIT=50`` or
``BL_PROVIDERS__OPENAI__API_KEY=...``. Settings are frozen: one immutable value
is built at startup and handed to the orchestrator.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.models import ModelIdentity, PipelineType


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ModelRef(_Frozen):
    """A (provider, model) pair used as analyzer primary or fallback."""

    provider: str
    model: str

    @property
    def identity(self) -> ModelIdentity:
        return ModelIdentity(self.provider, self.model)


class ModelSlot(_Frozen):
    """One configured model a project may query."""

    id: str
    provider: str
    model: str
    enabled: bool = True
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, gt=0)
    fallback: ModelRef | None = None

    @property
    def identity(self) -> ModelIdentity:
        return ModelIdentity(self.provider, self.model)


class ProviderEndpoint(_Frozen):
    """Connection details for an OpenAI-compatible chat completions API."""

    base_url: str
    api_key: str | None = None
    timeout: float = Field(60.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class AnalyzerConfig(_Frozen):
    """Per pipeline type: runs per model and the analyzer model pair.

    ``fallback`` is retried once for any slot that declares no fallback of its
    own. ``primary`` is only the default slot, used when no models are
    configured and the project does not restrict them; configured slots are
    always called directly.
    """

    runs_per_model: int = Field(1, gt=0)
    primary: ModelRef = Field(
        default_factory=lambda: ModelRef(provider="openai", model="gpt-4o-mini")
    )
    fallback: ModelRef = Field(
        default_factory=lambda: ModelRef(provider="mistral", model="mistral-small-latest")
    )


def _default_pipeline_limits() -> dict[PipelineType, int]:
    return {
        PipelineType.SPONTANEOUS: 150,
        PipelineType.SENTIMENT: 100,
        PipelineType.COMPARISON: 80,
        PipelineType.ACCURACY: 80,
    }


class ConcurrencyConfig(_Frozen):
    """Gate limits; validated by the gate itself when it is built."""

    concurrency_limit: int = 100
    pipeline_limits: dict[PipelineType, int] = Field(default_factory=_default_pipeline_limits)


def _default_analyzers() -> dict[PipelineType, AnalyzerConfig]:
    return {pipeline_type: AnalyzerConfig() for pipeline_type in PipelineType}


def _default_models() -> list[ModelSlot]:
    return [
        ModelSlot(id="gpt-4o", provider="openai", model="gpt-4o"),
        ModelSlot(id="mistral-large", provider="mistral", model="mistral-large-latest"),
    ]


def _default_providers() -> dict[str, ProviderEndpoint]:
    return {
        "openai": ProviderEndpoint(base_url="https://api.openai.com/v1"),
        "mistral": ProviderEndpoint(base_url="https://api.mistral.ai/v1"),
    }


class OrchestratorConfig(_Frozen):
    """Run-level behavior."""

    provider_timeout: float = Field(60.0, gt=0, description="Per-call timeout in seconds")
    auto_generate_reports: bool = True
    subscriber_queue_size: int = Field(256, gt=0)


class ObservabilityConfig(_Frozen):
    """Configuration for observability and monitoring."""

    enable_tracing: bool = False
    enable_metrics: bool = True
    log_level: str = "INFO"
    otlp_endpoint: str | None = None
    service_name: str = "brandlens"
    service_version: str = "0.1.0"


class StorageConfig(_Frozen):
    data_directory: Path = Path("./data")


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="BL_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    analyzer_config: dict[PipelineType, AnalyzerConfig] = Field(default_factory=_default_analyzers)
    models: list[ModelSlot] = Field(default_factory=_default_models)
    providers: dict[str, ProviderEndpoint] = Field(default_factory=_default_providers)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    environment: str = Field("development", description="development, staging or production")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("models")
    @classmethod
    def validate_unique_slot_ids(cls, v: list[ModelSlot]) -> list[ModelSlot]:
        ids = [slot.id for slot in v]
        if len(ids) != len(set(ids)):
            raise ValueError("model slot ids must be unique")
        return v

    def analyzer_for(self, pipeline_type: PipelineType) -> AnalyzerConfig:
        return self.analyzer_config.get(pipeline_type) or AnalyzerConfig()

    def enabled_models(self) -> list[ModelSlot]:
        return [slot for slot in self.models if slot.enabled]

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
