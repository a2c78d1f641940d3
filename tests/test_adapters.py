"""Tests for the vendor adapters and the streaming provider client."""

import json

import httpx
import pytest

from anvil.errors import ProviderError
from anvil.models import ContextMessage, FinishReason, ReasoningDetail, ToolCall, ToolDefinition, ToolOutput, ToolResult
from anvil.provider import ChatRequest, ProviderClient, ProviderConfig, ProviderKind, ReasoningConfig, adapter_for
from anvil.provider.anthropic import AnthropicAdapter
from anvil.provider.openai import OpenAIAdapter
from anvil.provider.stream import accumulate

READ_TOOL = ToolDefinition(
    name="read",
    description="Read a file",
    input_schema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
)


def _history() -> list[ContextMessage]:
    return [
        ContextMessage.system("You are helpful."),
        ContextMessage.user("read a.py"),
        ContextMessage.assistant(
            "",
            tool_calls=[ToolCall(call_id="c1", name="read", arguments={"path": "a.py"})],
            reasoning_details=[ReasoningDetail(text="hmm", signature="sig")],
        ),
        ContextMessage.tool(ToolResult(call_id="c1", name="read", output=ToolOutput(text="print(1)"))),
    ]


def _sse(*events: dict) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


class TestAnthropicAdapter:
    def test_system_lifted_and_blocks_rendered(self):
        payload = AnthropicAdapter().build_request(
            ChatRequest(model="claude", messages=_history(), tools=[READ_TOOL], max_tokens=512)
        )
        assert payload["stream"] is True
        assert payload["system"][0]["text"] == "You are helpful."
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assistant_blocks = payload["messages"][1]["content"]
        assert assistant_blocks[0] == {"type": "thinking", "thinking": "hmm", "signature": "sig"}
        assert assistant_blocks[1]["type"] == "tool_use"
        assert payload["messages"][2]["content"][-1]["tool_use_id"] == "c1"
        assert payload["tools"][0]["input_schema"]["additionalProperties"] is False

    def test_consecutive_tool_results_merged(self):
        messages = [
            ContextMessage.user("go"),
            ContextMessage.assistant(
                "", tool_calls=[ToolCall(call_id="a", name="read"), ToolCall(call_id="b", name="read")]
            ),
            ContextMessage.tool(ToolResult(call_id="a", name="read", output=ToolOutput(text="1"))),
            ContextMessage.tool(ToolResult(call_id="b", name="read", output=ToolOutput(text="2"))),
        ]
        payload = AnthropicAdapter().to_vendor(ChatRequest(model="claude", messages=messages))
        assert len(payload["messages"]) == 3
        assert [b["tool_use_id"] for b in payload["messages"][2]["content"]] == ["a", "b"]

    def test_thinking_budget(self):
        request = ChatRequest(
            model="claude", messages=[ContextMessage.user("x")], reasoning=ReasoningConfig(enabled=True, max_tokens=2048)
        )
        payload = AnthropicAdapter().build_request(request)
        assert payload["thinking"] == {"type": "enabled", "budget_tokens": 2048}
        assert "reasoning" not in payload

    def test_thinking_disabled(self):
        request = ChatRequest(
            model="claude", messages=[ContextMessage.user("x")], reasoning=ReasoningConfig(enabled=False)
        )
        payload = AnthropicAdapter().build_request(request)
        assert "thinking" not in payload
        assert "reasoning" not in payload

    def test_declared_stages(self):
        assert AnthropicAdapter.pipeline.names == [
            "drop_orphaned_tool_messages",
            "drop_invalid_tool_use",
            "set_anthropic_thinking",
            "set_anthropic_cache",
            "enforce_strict_object_schema",
        ]

    def test_headers(self):
        adapter = AnthropicAdapter()
        api = adapter.headers(ProviderConfig(id="a", kind=ProviderKind.ANTHROPIC, base_url="x", api_key="sk-ant-api"))
        assert api["x-api-key"] == "sk-ant-api"
        oauth = adapter.headers(ProviderConfig(id="a", kind=ProviderKind.ANTHROPIC, base_url="x", api_key="sk-ant-oat01"))
        assert oauth["authorization"] == "Bearer sk-ant-oat01"
        assert "x-api-key" not in oauth

    def test_decode_stream(self):
        adapter = AnthropicAdapter()
        events = [
            {"type": "message_start", "message": {"usage": {"input_tokens": 10, "cache_read_input_tokens": 5}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "t1", "name": "read"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"a"}'}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        ]
        message = accumulate([d for e in events for d in adapter.decode_event(e)])
        assert message.content == "Hi"
        assert message.tool_calls[0].arguments == {"path": "a"}
        assert message.finish_reason == FinishReason.TOOL_CALLS
        assert message.usage.prompt_tokens == 15
        assert message.usage.cached_tokens == 5
        assert message.usage.completion_tokens == 7

    def test_in_stream_error(self):
        with pytest.raises(ProviderError) as exc_info:
            AnthropicAdapter().decode_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        assert exc_info.value.error_type == "overloaded_error"


class TestOpenAIAdapter:
    def test_declared_stages(self):
        assert OpenAIAdapter.pipeline.names == [
            "drop_orphaned_tool_messages",
            "trim_tool_call_ids",
            "set_reasoning_effort",
            "set_openai_cache",
            "normalize_tool_schema",
        ]

    def test_render_history(self):
        payload = OpenAIAdapter().build_request(
            ChatRequest(model="gpt-4o", messages=_history(), tools=[READ_TOOL])
        )
        roles = [m["role"] for m in payload["messages"]]
        assert roles == ["system", "user", "assistant", "tool"]
        call = payload["messages"][2]["tool_calls"][0]
        assert json.loads(call["function"]["arguments"]) == {"path": "a.py"}
        assert payload["messages"][3]["tool_call_id"] == "c1"
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["tools"][0]["function"]["name"] == "read"

    def test_reasoning_becomes_effort(self):
        request = ChatRequest(
            model="o3", messages=[ContextMessage.user("x")], reasoning=ReasoningConfig(enabled=True, effort="low")
        )
        payload = OpenAIAdapter().build_request(request)
        assert payload["reasoning_effort"] == "low"
        assert "reasoning" not in payload

    def test_decode_stream(self):
        adapter = OpenAIAdapter()
        chunks = [
            {"choices": [{"delta": {"content": "Le"}}]},
            {"choices": [{"delta": {"content": "t me", "tool_calls": [{"index": 0, "id": "c9", "function": {"name": "read", "arguments": ""}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"path":"b"}'}}]}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 20, "completion_tokens": 4, "total_tokens": 24, "prompt_tokens_details": {"cached_tokens": 8}}},
        ]
        message = accumulate([d for c in chunks for d in adapter.decode_event(c)])
        assert message.content == "Let me"
        assert message.tool_calls[0].call_id == "c9"
        assert message.tool_calls[0].arguments == {"path": "b"}
        assert message.usage.total_tokens == 24
        assert message.usage.cached_tokens == 8

    def test_in_stream_error(self):
        with pytest.raises(ProviderError):
            OpenAIAdapter().decode_event({"error": {"message": "bad", "code": 500}})


class TestProviderClient:
    def _client(self, settings, handler, kind=ProviderKind.OPENAI) -> ProviderClient:
        config = ProviderConfig(id="p", kind=kind, base_url="http://provider.test", api_key="k")
        adapter = adapter_for(kind)
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            base_url=config.base_url,
            headers=adapter.headers(config),
        )
        return ProviderClient(config, settings, http=http)

    @pytest.mark.asyncio
    async def test_streams_full_completion(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            body = _sse({"choices": [{"delta": {"content": "done"}, "finish_reason": "stop"}]}) + b"data: [DONE]\n\n"
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = self._client(settings, handler)
        message = await client.chat(ChatRequest(model="gpt-4o", messages=[ContextMessage.user("hi")]))
        assert message.content == "done"
        assert message.finish_reason == FinishReason.STOP
        assert seen["path"] == "/chat/completions"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_http_error_decoded(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                json={"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}},
                headers={"retry-after": "3"},
            )

        client = self._client(settings, handler, kind=ProviderKind.ANTHROPIC)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(ChatRequest(model="claude", messages=[ContextMessage.user("hi")]))
        error = exc_info.value
        assert error.status_code == 429
        assert error.error_type == "rate_limit_error"
        assert error.retry_after == 3.0
        assert "slow down" in str(error)

    @pytest.mark.asyncio
    async def test_chat_before_start_raises(self, settings):
        client = ProviderClient(
            ProviderConfig(id="p", kind=ProviderKind.OPENAI, base_url="http://provider.test"), settings
        )
        with pytest.raises(RuntimeError):
            await client.chat(ChatRequest(model="m", messages=[ContextMessage.user("hi")]))
