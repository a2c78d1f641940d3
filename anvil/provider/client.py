"""HTTP/SSE client that drives one provider through its adapter.

Every call sends the complete request; a failed stream is never resumed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from anvil.config import Settings
from anvil.models import ChatCompletionMessage, MessageDelta
from anvil.provider.anthropic import AnthropicAdapter
from anvil.provider.base import ChatRequest, ProviderAdapter, ProviderConfig, ProviderKind
from anvil.provider.openai import OpenAIAdapter
from anvil.provider.stream import accumulate_stream

logger = logging.getLogger(__name__)

ADAPTERS: dict[ProviderKind, ProviderAdapter] = {
    ProviderKind.ANTHROPIC: AnthropicAdapter(),
    ProviderKind.OPENAI: OpenAIAdapter(),
}


def adapter_for(kind: ProviderKind) -> ProviderAdapter:
    return ADAPTERS[kind]


class ProviderClient:
    """Streams chat completions from one configured provider."""

    def __init__(
        self,
        config: ProviderConfig,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter_for(config.kind)
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Create the httpx client with auth headers, timeouts and pool limits."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self.adapter.headers(self.config),
            timeout=timeout,
            limits=limits,
        )
        logger.info("Provider client initialized (%s, %s)", self.config.id, self.config.kind.value)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def stream(self, request: ChatRequest) -> AsyncIterator[MessageDelta]:
        """Yield canonical deltas for one request.

        Raises ProviderError for HTTP errors and in-stream error events;
        httpx transport errors propagate unchanged.
        """
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.adapter.build_request(request)
        async with self._http.stream("POST", self.adapter.endpoint, json=payload) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise self.adapter.decode_error(
                    response.status_code, body, response.headers.get("retry-after")
                )

            # Only data: lines carry payloads; event: lines are redundant with "type"
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                raw = line[5:].strip()
                if not raw:
                    continue
                if raw == "[DONE]":
                    return
                for delta in self.adapter.decode_event(json.loads(raw)):
                    yield delta

    async def chat(self, request: ChatRequest) -> ChatCompletionMessage:
        return await accumulate_stream(self.stream(request))
