"""Anthropic Messages API adapter."""

from __future__ import annotations

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
    drop_invalid_tool_use,
    drop_orphaned_tool_messages,
    enforce_strict_object_schema,
    set_anthropic_cache,
    set_anthropic_thinking,
)

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    kind = ProviderKind.ANTHROPIC
    endpoint = "/v1/messages"
    pipeline = Pipeline(
        (
            stage(drop_invalid_tool_use),
            stage(set_anthropic_thinking),
            stage(set_anthropic_cache),
            stage(enforce_strict_object_schema),
        ),
        history=(stage(drop_orphaned_tool_messages),),
    )

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"anthropic-version": API_VERSION, "content-type": "application/json"}
        key = config.api_key
        # OAuth tokens need Bearer auth plus the oauth beta header
        if "sk-ant-oat" in key:
            headers["authorization"] = f"Bearer {key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
        elif key:
            headers["x-api-key"] = key
        else:
            logger.warning("No API key for provider %s -- requests will fail", config.id)
        headers.update(config.headers)
        return headers

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def to_vendor(self, request: ChatRequest) -> dict[str, Any]:
        messages = self.pipeline.repair(request.messages)
        system = [{"type": "text", "text": m.content} for m in messages if m.role == Role.SYSTEM]

        rendered: list[dict[str, Any]] = []
        for message in messages:
            if message.role == Role.SYSTEM:
                continue
            entry = self._render(message)
            # Consecutive tool results travel in one user turn
            if (
                message.role == Role.TOOL
                and rendered
                and rendered[-1]["role"] == "user"
                and isinstance(rendered[-1]["content"], list)
                and all(b.get("type") == "tool_result" for b in rendered[-1]["content"])
            ):
                rendered[-1]["content"].extend(entry["content"])
            else:
                rendered.append(entry)

        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": rendered,
        }
        if system:
            payload["system"] = system
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in request.tools
            ]
        if request.reasoning is not None:
            payload["reasoning"] = {"enabled": request.reasoning.enabled, "max_tokens": request.reasoning.max_tokens}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    @staticmethod
    def _render(message: ContextMessage) -> dict[str, Any]:
        if message.role == Role.TOOL and message.tool_result is not None:
            result = message.tool_result
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": result.call_id,
                        "content": result.output.text,
                        "is_error": result.output.is_error,
                    }
                ],
            }

        if message.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            for detail in message.reasoning_details:
                if detail.signature:
                    blocks.append({"type": "thinking", "thinking": detail.text, "signature": detail.signature})
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments})
            return {"role": "assistant", "content": blocks or message.content}

        return {"role": "user", "content": message.content}

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def decode_event(self, data: dict[str, Any]) -> list[MessageDelta]:
        event_type = data.get("type")

        if event_type == "error":
            raise decode_error_body(None, data)

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage") or {}
            cached = usage.get("cache_read_input_tokens") or 0
            prompt = (usage.get("input_tokens") or 0) + cached + (usage.get("cache_creation_input_tokens") or 0)
            return [MessageDelta(usage=Usage(prompt_tokens=prompt, cached_tokens=cached))]

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            index = data.get("index", 0)
            if block.get("type") == "tool_use":
                return [MessageDelta(tool_call_parts=[ToolCallPart(index=index, call_id=block.get("id"), name=block.get("name"))])]
            if block.get("type") == "thinking":
                text = block.get("thinking", "")
                return [MessageDelta(reasoning=text, reasoning_details=[ReasoningDetail(text=text, index=index)])]
            if block.get("type") == "text" and block.get("text"):
                return [MessageDelta(content=block["text"])]
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            index = data.get("index", 0)
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [MessageDelta(content=delta.get("text", ""))]
            if delta_type == "input_json_delta":
                return [MessageDelta(tool_call_parts=[ToolCallPart(index=index, arguments_part=delta.get("partial_json", ""))])]
            if delta_type == "thinking_delta":
                text = delta.get("thinking", "")
                return [MessageDelta(reasoning=text, reasoning_details=[ReasoningDetail(text=text, index=index)])]
            if delta_type == "signature_delta":
                return [MessageDelta(reasoning_details=[ReasoningDetail(signature=delta.get("signature"), index=index)])]
            return []

        if event_type == "message_delta":
            usage = data.get("usage") or {}
            return [
                MessageDelta(
                    usage=Usage(completion_tokens=usage.get("output_tokens") or 0),
                    finish_reason=FinishReason.from_vendor(data.get("delta", {}).get("stop_reason")),
                )
            ]

        # ping, content_block_stop, message_stop
        return []
