"""OpenAI Chat Completions adapter (also used for OpenAI-compatible vendors)."""

from __future__ import annotations

import json
import logging
from typing import Any

from anvil.models import (
    ContextMessage,
    FinishReason,
    MessageDelta,
    ReasoningDetail,
    Role,
    ToolCallPart,
    Usage,
)
from anvil.provider.base import ChatRequest, ProviderAdapter, ProviderConfig, ProviderKind, decode_error_body
from anvil.provider.pipeline import Pipeline, stage
from anvil.provider.transforms import (
    drop_orphaned_tool_messages,
    normalize_tool_schema,
    set_openai_cache,
    set_reasoning_effort,
    supports_cache,
    trim_tool_call_ids,
)

logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    kind = ProviderKind.OPENAI
    endpoint = "/chat/completions"
    pipeline = Pipeline(
        (
            stage(trim_tool_call_ids),
            stage(set_reasoning_effort),
            stage(set_openai_cache).when(supports_cache),
            stage(normalize_tool_schema),
        ),
        history=(stage(drop_orphaned_tool_messages),),
    )

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if config.api_key:
            headers["authorization"] = f"Bearer {config.api_key}"
        else:
            logger.warning("No API key for provider %s -- requests will fail", config.id)
        headers.update(config.headers)
        return headers

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def to_vendor(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [self._render(m) for m in self.pipeline.repair(request.messages)],
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in request.tools
            ]
        if request.reasoning is not None:
            payload["reasoning"] = {
                "enabled": request.reasoning.enabled,
                "effort": request.reasoning.effort,
                "max_tokens": request.reasoning.max_tokens,
            }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    @staticmethod
    def _render(message: ContextMessage) -> dict[str, Any]:
        if message.role == Role.TOOL and message.tool_result is not None:
            return {
                "role": "tool",
                "tool_call_id": message.tool_result.call_id,
                "content": message.tool_result.output.text,
            }
        entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": call.arguments if isinstance(call.arguments, str) else json.dumps(call.arguments),
                    },
                }
                for call in message.tool_calls
            ]
        return entry

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def decode_event(self, data: dict[str, Any]) -> list[MessageDelta]:
        if "error" in data:
            raise decode_error_body(None, data)

        deltas: list[MessageDelta] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or choice.get("message") or {}
            reasoning = delta.get("reasoning") or delta.get("reasoning_content") or ""
            parts = [
                ToolCallPart(
                    index=tc.get("index", i),
                    call_id=tc.get("id"),
                    name=(tc.get("function") or {}).get("name"),
                    arguments_part=(tc.get("function") or {}).get("arguments") or "",
                )
                for i, tc in enumerate(delta.get("tool_calls") or [])
            ]
            details = [
                ReasoningDetail(
                    text=d.get("text") or d.get("summary") or "",
                    type=d.get("type", "reasoning.text"),
                    signature=d.get("signature"),
                    index=d.get("index", 0),
                )
                for d in delta.get("reasoning_details") or []
            ]
            deltas.append(
                MessageDelta(
                    content=delta.get("content") or "",
                    reasoning=reasoning,
                    reasoning_details=details,
                    tool_call_parts=parts,
                    finish_reason=FinishReason.from_vendor(choice.get("finish_reason")),
                )
            )

        usage = data.get("usage")
        if usage:
            deltas.append(
                MessageDelta(
                    usage=Usage(
                        prompt_tokens=usage.get("prompt_tokens") or 0,
                        completion_tokens=usage.get("completion_tokens") or 0,
                        total_tokens=usage.get("total_tokens") or 0,
                        cached_tokens=(usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0,
                        cost=usage.get("cost"),
                    )
                )
            )
        return deltas
