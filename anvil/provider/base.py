"""Provider configuration and the adapter interface shared by all vendors."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from anvil.errors import ProviderError
from anvil.models import ContextMessage, MessageDelta, ToolDefinition
from anvil.provider.pipeline import Pipeline


class ProviderKind(StrEnum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class ProviderConfig:
    id: str
    kind: ProviderKind
    base_url: str
    api_key: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ReasoningConfig:
    enabled: bool = False
    effort: str | None = None  # none, low, medium, high
    max_tokens: int | None = None


@dataclass
class ChatRequest:
    """Canonical request handed to an adapter."""

    model: str
    messages: list[ContextMessage]
    tools: list[ToolDefinition] = field(default_factory=list)
    max_tokens: int = 8192
    reasoning: ReasoningConfig | None = None
    temperature: float | None = None


class ProviderAdapter:
    """Translates canonical requests/responses for one vendor family.

    Subclasses declare their outbound Pipeline once, as a class attribute.
    """

    kind: ProviderKind
    endpoint: str
    pipeline: Pipeline

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        raise NotImplementedError

    def to_vendor(self, request: ChatRequest) -> dict[str, Any]:
        raise NotImplementedError

    def decode_event(self, data: dict[str, Any]) -> list[MessageDelta]:
        """Translate one decoded SSE payload. Raises ProviderError for in-stream errors."""
        raise NotImplementedError

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        """Canonical request -> vendor payload with all outbound stages applied."""
        payload = self.to_vendor(request)
        payload["stream"] = True
        return self.pipeline(payload)

    def decode_error(
        self, status_code: int, body: str, retry_after: str | None = None
    ) -> ProviderError:
        return decode_error_body(status_code, body, retry_after)


def decode_error_body(status_code: int | None, body: Any, retry_after: str | None = None) -> ProviderError:
    """Turn a vendor error payload into a ProviderError.

    Accepts both `{"type": "error", "error": {...}}` and `{"error": {...}}`
    shapes, as a dict or as raw JSON text.
    """
    data: Any = body
    if isinstance(body, (str, bytes)):
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            data = {"error": {"message": body if isinstance(body, str) else body.decode(errors="replace")}}

    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, str):
        error = {"message": error}
    error = error or {}

    message = str(error.get("message") or "")
    if not message:
        message = f"HTTP {status_code}" if status_code else "Unknown provider error"

    delay = None
    if retry_after:
        try:
            delay = float(retry_after)
        except ValueError:
            delay = None

    return ProviderError(
        message,
        status_code=status_code,
        error_type=error.get("type"),
        code=str(error["code"]) if error.get("code") is not None else None,
        retry_after=delay,
    )
