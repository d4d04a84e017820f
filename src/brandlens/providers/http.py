"""
httpx client for OpenAI-compatible ``/chat/completions`` endpoints.
"""

from collections.abc import Mapping
from typing import Any

import httpx

from ..config.settings import ProviderEndpoint
from ..core.errors import ProviderError, ProviderTimeoutError
from ..core.models import ModelIdentity
from ..observability.logging import get_logger
from .base import Completion

logger = get_logger(__name__)


class HttpModelProviderClient:
    """One shared ``httpx.AsyncClient`` serving every configured provider.

    Use as an async context manager, or pass an already open client.
    """

    def __init__(
        self,
        endpoints: Mapping[str, ProviderEndpoint],
        http_client: httpx.AsyncClient | None = None,
        max_connections: int = 100,
    ):
        self.endpoints = dict(endpoints)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._max_connections = max_connections

    async def __aenter__(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                limits=httpx.Limits(
                    max_connections=self._max_connections,
                    max_keepalive_connections=self._max_connections // 5 or 1,
                ),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _endpoint(self, model: ModelIdentity) -> ProviderEndpoint:
        endpoint = self.endpoints.get(model.provider)
        if endpoint is None:
            raise ProviderError(
                f"No endpoint configured for provider '{model.provider}'",
                provider=model.provider,
                model=model.model,
            )
        return endpoint

    @staticmethod
    def _headers(endpoint: ProviderEndpoint) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return headers

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelIdentity,
        timeout: float,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        if self._http_client is None:
            raise RuntimeError("Client not open. Use it as an async context manager.")

        endpoint = self._endpoint(model)
        body: dict[str, Any] = {
            "model": model.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        try:
            response = await self._http_client.post(
                f"{endpoint.base_url}/chat/completions",
                json=body,
                headers=self._headers(endpoint),
                timeout=min(timeout, endpoint.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"{model} timed out after {timeout}s", provider=model.provider, model=model.model
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{model} returned HTTP {e.response.status_code}",
                provider=model.provider,
                model=model.model,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(
                f"{model} request failed: {e}", provider=model.provider, model=model.model
            ) from e

        return self._parse(payload, model)

    @staticmethod
    def _parse(payload: Mapping[str, Any], model: ModelIdentity) -> Completion:
        try:
            message = payload["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"{model} returned an unexpected payload", provider=model.provider, model=model.model
            ) from e

        citations = payload.get("citations") or message.get("citations")
        if citations and all(isinstance(c, str) for c in citations):
            citations = [{"url": c} for c in citations]

        tool_usage = message.get("tool_calls") or payload.get("tool_usage")
        used_web_search = payload.get("used_web_search")
        if used_web_search is None and (citations or tool_usage):
            used_web_search = True

        return Completion(
            text=message.get("content") or "",
            citations=citations or None,
            tool_usage=tool_usage or None,
            used_web_search=used_web_search,
        )
