"""Tests for the outbound transform stages and pipelines."""

from anvil.models import ContextMessage, Role, ToolCall, ToolOutput, ToolResult
from anvil.provider import Pipeline, Stage, stage
from anvil.provider.transforms import (
    MAX_TOOL_CALL_ID_LENGTH,
    drop_invalid_tool_use,
    drop_orphaned_tool_messages,
    enforce_strict_object_schema,
    normalize_tool_schema,
    set_anthropic_cache,
    set_openai_cache,
    set_reasoning_effort,
    supports_cache,
    trim_tool_call_ids,
)


def _result(call_id: str, text: str = "ok") -> ContextMessage:
    return ContextMessage.tool(ToolResult(call_id=call_id, name="read", output=ToolOutput(text=text)))


class TestPipeline:
    def test_stages_run_in_declared_order(self):
        def add_a(p):
            return {**p, "trace": p.get("trace", "") + "a"}

        def add_b(p):
            return {**p, "trace": p.get("trace", "") + "b"}

        pipeline = Pipeline((stage(add_a), stage(add_b)))
        assert pipeline({})["trace"] == "ab"
        assert pipeline.names == ["add_a", "add_b"]

    def test_predicate_skips_stage(self):
        marked = Stage("mark", lambda p: {**p, "marked": True}).when(lambda p: p.get("model") == "x")
        assert marked({"model": "x"})["marked"] is True
        assert "marked" not in marked({"model": "y"})

    def test_history_stages_repair_messages(self):
        pipeline = Pipeline((), history=(stage(drop_orphaned_tool_messages),))
        repaired = pipeline.repair([ContextMessage.user("hi"), _result("ghost")])
        assert [m.role for m in repaired] == [Role.USER]
        assert pipeline.names == ["drop_orphaned_tool_messages"]


class TestOrphans:
    def test_call_without_result_dropped(self):
        messages = [
            ContextMessage.user("hi"),
            ContextMessage.assistant("", tool_calls=[ToolCall(call_id="c1", name="read")]),
        ]
        repaired = drop_orphaned_tool_messages(messages)
        assert len(repaired) == 1
        assert repaired[0].content == "hi"

    def test_result_without_call_dropped(self):
        repaired = drop_orphaned_tool_messages([ContextMessage.user("hi"), _result("ghost")])
        assert [m.content for m in repaired] == ["hi"]

    def test_partial_calls_keep_text(self):
        assistant = ContextMessage.assistant(
            "looking",
            tool_calls=[ToolCall(call_id="c1", name="read"), ToolCall(call_id="c2", name="read")],
        )
        repaired = drop_orphaned_tool_messages([assistant, _result("c1")])
        assert [c.call_id for c in repaired[0].tool_calls] == ["c1"]
        # input is not mutated
        assert len(assistant.tool_calls) == 2

    def test_intact_history_unchanged(self):
        messages = [
            ContextMessage.assistant("", tool_calls=[ToolCall(call_id="c1", name="read")]),
            _result("c1"),
        ]
        assert drop_orphaned_tool_messages(messages) == messages


class TestAnthropicStages:
    def test_cache_marks_system_and_last_message(self):
        payload = {
            "system": [{"type": "text", "text": "sys"}],
            "messages": [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}],
        }
        out = set_anthropic_cache(payload)
        assert out["system"][0]["cache_control"] == {"type": "ephemeral"}
        assert out["messages"][-1]["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert out["messages"][0]["content"] == "a"
        assert "cache_control" not in payload["system"][0]

    def test_cache_without_system_marks_first_message(self):
        out = set_anthropic_cache({"messages": [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]})
        assert out["messages"][0]["content"][0]["cache_control"] == {"type": "ephemeral"}

    def test_invalid_tool_use_input_wrapped(self):
        payload = {"messages": [{"role": "assistant", "content": [{"type": "tool_use", "input": "not json"}]}]}
        assert drop_invalid_tool_use(payload)["messages"][0]["content"][0]["input"] == {"json": "not json"}

    def test_strict_object_schema_nested(self):
        schema = {
            "type": "object",
            "properties": {"opts": {"type": "object", "properties": {"x": {"type": "string"}}}},
        }
        out = enforce_strict_object_schema({"tools": [{"name": "t", "input_schema": schema}]})
        closed = out["tools"][0]["input_schema"]
        assert closed["additionalProperties"] is False
        assert closed["properties"]["opts"]["additionalProperties"] is False
        assert "additionalProperties" not in schema


class TestOpenAIStages:
    def test_trim_tool_call_ids(self):
        long_id = "x" * 64
        payload = {
            "messages": [
                {"role": "assistant", "tool_calls": [{"id": long_id}]},
                {"role": "tool", "tool_call_id": long_id},
            ]
        }
        out = trim_tool_call_ids(payload)
        assert len(out["messages"][0]["tool_calls"][0]["id"]) == MAX_TOOL_CALL_ID_LENGTH
        assert out["messages"][1]["tool_call_id"] == out["messages"][0]["tool_calls"][0]["id"]

    def test_normalize_tool_schema(self):
        params = {"$schema": "x", "title": "T", "description": "d", "type": "object", "properties": {"a": {"$schema": "y"}}}
        out = normalize_tool_schema({"tools": [{"type": "function", "function": {"parameters": params}}]})
        cleaned = out["tools"][0]["function"]["parameters"]
        assert cleaned == {"type": "object", "properties": {"a": {}}}

    def test_openai_cache_skips_second_to_last(self):
        payload = {
            "model": "anthropic/claude-sonnet",
            "messages": [
                {"role": "system", "content": "s"},
                {"role": "user", "content": [{"type": "text", "text": "u", "cache_control": {"type": "ephemeral"}}]},
                {"role": "user", "content": "last"},
            ],
        }
        out = set_openai_cache(payload)
        assert out["messages"][0]["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert "cache_control" not in out["messages"][1]["content"][0]
        assert out["messages"][2]["content"][0]["cache_control"] == {"type": "ephemeral"}

    def test_supports_cache_by_model(self):
        assert supports_cache({"model": "anthropic/claude-3"})
        assert not supports_cache({"model": "gpt-4o"})

    def test_reasoning_effort_mapping(self):
        assert set_reasoning_effort({"reasoning": {"enabled": False}})["reasoning_effort"] == "none"
        assert set_reasoning_effort({"reasoning": {"enabled": True, "effort": "high"}})["reasoning_effort"] == "high"
        assert set_reasoning_effort({"reasoning": {"enabled": True, "max_tokens": 1000}})["reasoning_effort"] == "low"
        assert set_reasoning_effort({"reasoning": {"enabled": True}})["reasoning_effort"] == "medium"
        out = set_reasoning_effort({"model": "m"})
        assert out == {"model": "m"}
