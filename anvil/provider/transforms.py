"""Outbound transform stages.

Each function takes a vendor payload and returns a new one; inputs are never
mutated. History stages (orphan dropping) work on ContextMessages before the
adapter renders them.
"""

from __future__ import annotations

import copy
import re
from typing import Any

from anvil.models import ContextMessage, Role

Payload = dict[str, Any]

_EPHEMERAL = {"type": "ephemeral"}
MAX_TOOL_CALL_ID_LENGTH = 40
_CACHE_CAPABLE_MODELS = re.compile(r"anthropic|claude|gemini", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Canonical history repair
# ---------------------------------------------------------------------------


def drop_orphaned_tool_messages(messages: list[ContextMessage]) -> list[ContextMessage]:
    """Remove tool calls with no result and results with no call.

    A cancelled turn can commit an assistant message whose tool calls never
    ran; vendors reject such history.
    """
    result_ids = {m.tool_result.call_id for m in messages if m.tool_result is not None}
    call_ids = {c.call_id for m in messages for c in m.tool_calls}

    repaired: list[ContextMessage] = []
    for message in messages:
        if message.tool_result is not None:
            if message.tool_result.call_id in call_ids:
                repaired.append(message)
            continue
        if message.tool_calls:
            kept = [c for c in message.tool_calls if c.call_id in result_ids]
            if len(kept) != len(message.tool_calls):
                if not kept and not message.content and message.role == Role.ASSISTANT:
                    continue
                message = copy.copy(message)
                message.tool_calls = kept
        repaired.append(message)
    return repaired


# ---------------------------------------------------------------------------
# Anthropic stages
# ---------------------------------------------------------------------------

DEFAULT_THINKING_BUDGET = 4096


def set_anthropic_thinking(payload: Payload) -> Payload:
    """Turn the canonical `reasoning` block into a `thinking` directive."""
    payload = copy.deepcopy(payload)
    reasoning = payload.pop("reasoning", None)
    if reasoning and reasoning.get("enabled"):
        payload["thinking"] = {
            "type": "enabled",
            "budget_tokens": reasoning.get("max_tokens") or DEFAULT_THINKING_BUDGET,
        }
    return payload


def drop_invalid_tool_use(payload: Payload) -> Payload:
    """Wrap non-object tool_use inputs so the Messages API accepts them."""
    payload = copy.deepcopy(payload)
    for message in payload.get("messages", []):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for block in content:
            if block.get("type") == "tool_use" and not isinstance(block.get("input"), dict):
                block["input"] = {"json": block.get("input")}
    return payload


def set_anthropic_cache(payload: Payload) -> Payload:
    """Mark the first system block (or first message) and the last message as cacheable."""
    payload = copy.deepcopy(payload)
    system = payload.get("system")
    messages = payload.get("messages", [])

    if isinstance(system, list) and system:
        system[0]["cache_control"] = dict(_EPHEMERAL)
    elif messages:
        _mark_last_block(messages[0])

    if messages:
        _mark_last_block(messages[-1])
    return payload


def enforce_strict_object_schema(payload: Payload) -> Payload:
    """Close every object schema in tool inputs (additionalProperties: false)."""
    payload = copy.deepcopy(payload)
    for tool in payload.get("tools", []):
        schema = tool.get("input_schema")
        if isinstance(schema, dict):
            _close_objects(schema)
    return payload


def _close_objects(schema: dict[str, Any]) -> None:
    if schema.get("type") == "object":
        schema.setdefault("properties", {})
        schema["additionalProperties"] = False
    for key in ("properties", "$defs", "definitions"):
        nested = schema.get(key)
        if isinstance(nested, dict):
            for child in nested.values():
                if isinstance(child, dict):
                    _close_objects(child)
    items = schema.get("items")
    if isinstance(items, dict):
        _close_objects(items)
    for key in ("anyOf", "oneOf", "allOf"):
        for child in schema.get(key, []) or []:
            if isinstance(child, dict):
                _close_objects(child)


def _mark_last_block(message: dict[str, Any]) -> None:
    content = message.get("content")
    if isinstance(content, str):
        message["content"] = [{"type": "text", "text": content, "cache_control": dict(_EPHEMERAL)}]
    elif isinstance(content, list) and content:
        content[-1]["cache_control"] = dict(_EPHEMERAL)


# ---------------------------------------------------------------------------
# OpenAI-compatible stages
# ---------------------------------------------------------------------------


def trim_tool_call_ids(payload: Payload) -> Payload:
    """Cut tool-call ids to the 40 characters the Chat Completions API allows."""
    payload = copy.deepcopy(payload)
    for message in payload.get("messages", []):
        for call in message.get("tool_calls", []) or []:
            if isinstance(call.get("id"), str):
                call["id"] = call["id"][:MAX_TOOL_CALL_ID_LENGTH]
        if isinstance(message.get("tool_call_id"), str):
            message["tool_call_id"] = message["tool_call_id"][:MAX_TOOL_CALL_ID_LENGTH]
    return payload


def normalize_tool_schema(payload: Payload) -> Payload:
    """Drop top-level title/description and any $schema keys from tool parameters."""
    payload = copy.deepcopy(payload)
    for tool in payload.get("tools", []) or []:
        parameters = tool.get("function", {}).get("parameters")
        if isinstance(parameters, dict):
            parameters.pop("description", None)
            parameters.pop("title", None)
            _strip_key(parameters, "$schema")
    return payload


def _strip_key(node: Any, key: str) -> None:
    if isinstance(node, dict):
        node.pop(key, None)
        for value in node.values():
            _strip_key(value, key)
    elif isinstance(node, list):
        for value in node:
            _strip_key(value, key)


def set_openai_cache(payload: Payload) -> Payload:
    """Cache the first and last messages; the second-to-last is left uncached."""
    payload = copy.deepcopy(payload)
    messages = payload.get("messages", [])
    if not messages:
        return payload
    _mark_last_block(messages[0])
    if len(messages) > 1:
        _mark_last_block(messages[-1])
    if len(messages) > 2:
        content = messages[-2].get("content")
        if isinstance(content, list):
            for part in content:
                part.pop("cache_control", None)
    return payload


def supports_cache(payload: Payload) -> bool:
    return bool(_CACHE_CAPABLE_MODELS.search(payload.get("model", "")))


def set_reasoning_effort(payload: Payload) -> Payload:
    """Map the canonical `reasoning` block onto `reasoning_effort`.

    Disabled -> "none"; explicit effort wins; otherwise derived from the token
    budget; otherwise "medium".
    """
    payload = copy.deepcopy(payload)
    reasoning = payload.pop("reasoning", None)
    if not reasoning:
        return payload
    if reasoning.get("enabled") is False:
        payload["reasoning_effort"] = "none"
    elif reasoning.get("effort"):
        payload["reasoning_effort"] = reasoning["effort"]
    elif reasoning.get("max_tokens"):
        payload["reasoning_effort"] = _effort_for_budget(reasoning["max_tokens"])
    else:
        payload["reasoning_effort"] = "medium"
    return payload


def _effort_for_budget(max_tokens: int) -> str:
    if max_tokens <= 1024:
        return "low"
    if max_tokens <= 8192:
        return "medium"
    return "high"
