"""
Model provider client interface.
"""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..core.models import ModelIdentity


@dataclass(frozen=True)
class Completion:
    """Text returned by a provider plus the web-search metadata it reported."""

    text: str
    citations: list[dict[str, Any]] | None = None
    tool_usage: list[dict[str, Any]] | None = None
    used_web_search: bool | None = None


@runtime_checkable
class ModelProviderClient(Protocol):
    """Issues one chat completion against a (provider, model) pair.

    Implementations raise ``ProviderError`` for any failure the caller should
    treat as a failed attempt (HTTP status, transport, unparsable payload).
    """

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelIdentity,
        timeout: float,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion: ...
