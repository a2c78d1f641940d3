"""Turn orchestrator: the agent loop around one conversation.

States: AWAITING_MODEL -> EXECUTING_TOOLS -> (COMPACTING) -> AWAITING_MODEL
... -> TERMINATED. A turn ends when a reply has no tool calls, when a fatal
error occurs, or when the request cap is hit.

The Context is only ever extended by whole groups: an assistant reply
together with all of its tool results. A cancellation while tools are
running therefore leaves the Context at the previous group.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from enum import StrEnum

import httpx

from anvil.compaction import CompactionManager, TokenEstimator, summarize_with
from anvil.errors import AnvilError, IterationLimitError, ToolFailureLimitError
from anvil.events import ChatEvent, DecisionChannel, EventHandler, EventType, discard_event
from anvil.models import (
    ChatCompletionMessage,
    Context,
    ContextMessage,
    Conversation,
    Role,
    ToolResult,
    set_conversation_id,
)
from anvil.policy.service import DecisionCache
from anvil.provider.base import ChatRequest
from anvil.provider.retry import RetryConfig, RetryController
from anvil.tools.registry import ToolCallContext, ToolRegistry, filter_allowed
from anvil.workflow import ResolvedAgent

logger = logging.getLogger(__name__)

ChatFn = Callable[[ChatRequest], Awaitable[ChatCompletionMessage]]
PersistFn = Callable[[Conversation], Awaitable[None]]

RETRY_NOTE = (
    "<retry>This tool call failed. You have {attempts_left} of {limit} attempts left for "
    "this tool in this turn. Read the error above and adjust the arguments or try a "
    "different approach.</retry>"
)


class TurnState(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    COMPACTING = "compacting"
    TERMINATED = "terminated"


class ToolErrorTracker:
    """Consecutive failures per tool within one turn.

    A tool's count resets as soon as it succeeds once.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.errors: dict[str, int] = {}

    def record(self, results: list[ToolResult]) -> None:
        failed = {r.name for r in results if r.output.is_error}
        succeeded = {r.name for r in results if not r.output.is_error}
        for name in failed:
            self.errors[name] = self.errors.get(name, 0) + 1
        for name in succeeded - failed:
            self.errors.pop(name, None)

    def remaining(self, name: str) -> int:
        return max(0, self.limit - self.errors.get(name, 0))

    def maxed_out(self) -> list[str]:
        return sorted(name for name, count in self.errors.items() if count >= self.limit)

    def limit_reached(self) -> bool:
        return bool(self.maxed_out())


class Orchestrator:
    """Runs turns for one conversation with injected collaborators.

    Nothing here is global: the provider call, tool registry, decision
    channel, persistence hook and event sink are all passed in.
    """

    def __init__(
        self,
        *,
        chat: ChatFn,
        registry: ToolRegistry,
        agent: ResolvedAgent,
        cwd: str,
        retry: RetryConfig | None = None,
        emit: EventHandler = discard_event,
        channel: DecisionChannel | None = None,
        persist: PersistFn | None = None,
        estimator: TokenEstimator | None = None,
        compactor: CompactionManager | None = None,
        summary_max_tokens: int = 2000,
    ) -> None:
        self._chat = chat
        self._registry = registry
        self.agent = agent
        self._cwd = cwd
        self._emit = emit
        self._channel = channel
        self._persist = persist
        self.estimator = estimator or TokenEstimator()
        self._retry = RetryController(retry or RetryConfig(), on_retry=self._on_retry)
        self.compactor = compactor or CompactionManager(
            agent.compaction,
            summarize_with(self._call_model, agent.summary_model, summary_max_tokens),
            self.estimator,
        )
        self.state = TurnState.TERMINATED
        self.conversation: Conversation | None = None
        self._conversation_id: str | None = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _send(self, event_type: EventType, **data) -> None:
        await self._emit(ChatEvent(type=event_type, data=data, conversation_id=self._conversation_id))

    async def _on_retry(self, attempt: int, delay: float, error: BaseException) -> None:
        await self._send(EventType.RETRY_ATTEMPT, attempt=attempt, delay=delay, cause=str(error))

    async def _call_model(self, request: ChatRequest) -> ChatCompletionMessage:
        return await self._retry.call_with_retry(lambda: self._chat(request))

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run(self, conversation: Conversation, user_message: str) -> Conversation:
        """Run one turn to completion and return the updated conversation.

        FatalTurnError and terminal ProviderError propagate after an ERROR
        event. On cancellation, `self.conversation` holds the last
        committed state.
        """
        conversation = set_conversation_id(conversation)
        context = self._prepare_context(conversation.context, user_message)
        conversation = replace(conversation, context=context)
        if conversation.title is None:
            conversation.title = user_message.strip().splitlines()[0][:80] if user_message.strip() else None
        conversation.metrics.started_at = datetime.now(UTC)
        conversation.metrics.finished_at = None
        self.conversation = conversation
        self._conversation_id = conversation.id

        agent = self.agent
        allowed = None
        if agent.agent.tools is not None:
            allowed = frozenset(filter_allowed(self._registry.names(), agent.agent.tools))
        tool_ctx = ToolCallContext(
            cwd=self._cwd,
            conversation_id=conversation.id,
            emit=self._emit,
            decisions=DecisionCache(),
            channel=self._channel,
            metrics=conversation.metrics,
            allowed_tools=allowed,
            model_modalities=agent.modalities,
        )
        tracker = ToolErrorTracker(agent.max_tool_failure_per_turn)
        requests = 0

        logger.info(
            "Turn started: conversation=%s agent=%s model=%s messages=%d",
            conversation.id,
            agent.agent.id,
            agent.model.id,
            len(context.messages),
        )
        await self._save()

        try:
            while True:
                if requests >= agent.max_requests_per_turn:
                    logger.warning(
                        "Agent %s reached the maximum of %d requests per turn",
                        agent.agent.id,
                        agent.max_requests_per_turn,
                    )
                    await self._send(
                        EventType.INTERRUPT,
                        reason="max_requests_per_turn",
                        limit=agent.max_requests_per_turn,
                    )
                    raise IterationLimitError(agent.max_requests_per_turn)

                if self.compactor.should_compact(self.conversation.context):
                    await self._compact()

                self.state = TurnState.AWAITING_MODEL
                context = self.conversation.context
                input_chars = self.estimator.context_chars(context)
                message = await self._call_model(self._request(context, allowed))
                requests += 1

                self.estimator.calibrate(input_chars, message.usage.prompt_tokens)
                logger.info(
                    "Usage: conversation=%s messages=%d prompt=%d total=%d cached=%d finish=%s",
                    conversation.id,
                    len(context.messages),
                    message.usage.prompt_tokens,
                    message.usage.total_tokens,
                    message.usage.cached_tokens,
                    message.finish_reason,
                )
                await self._send(EventType.USAGE, **message.usage.to_dict())
                if message.reasoning and agent.model.reasoning_supported:
                    await self._send(EventType.REASONING, content=message.reasoning)
                if message.content:
                    await self._send(EventType.TEXT, content=message.content)

                assistant = ContextMessage.assistant(
                    message.content,
                    tool_calls=message.tool_calls,
                    reasoning_details=message.reasoning_details,
                    model=agent.model.id,
                )

                if not message.tool_calls:
                    self._commit([assistant], message)
                    await self._save()
                    await self._send(EventType.TASK_COMPLETE)
                    logger.info("Turn complete: conversation=%s requests=%d", conversation.id, requests)
                    return self.conversation

                self.state = TurnState.EXECUTING_TOOLS
                results = await self._execute_tools(message, tool_ctx)
                tracker.record(results)
                for result in results:
                    if result.output.is_error:
                        note = RETRY_NOTE.format(attempts_left=tracker.remaining(result.name), limit=tracker.limit)
                        result.output.text = f"{result.output.text}\n{note}"

                self._commit([assistant, *(ContextMessage.tool(r) for r in results)], message)
                await self._save()

                if tracker.limit_reached():
                    maxed = tracker.maxed_out()
                    await self._send(
                        EventType.INTERRUPT,
                        reason="max_tool_failure_per_turn",
                        limit=tracker.limit,
                        errors=dict(tracker.errors),
                    )
                    raise ToolFailureLimitError(maxed[0], tracker.limit)
        except (AnvilError, httpx.HTTPError) as e:
            logger.error("Turn failed: conversation=%s: %s", conversation.id, e)
            await self._send(EventType.ERROR, message=str(e), error=type(e).__name__)
            raise
        finally:
            self.conversation.metrics.finished_at = datetime.now(UTC)
            self.state = TurnState.TERMINATED

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare_context(self, context: Context | None, user_message: str) -> Context:
        """Fresh system prompt, then the previous history, then the new user message."""
        context = context or Context()
        history = [m for m in context.messages if m.role != Role.SYSTEM]
        messages = [ContextMessage.system(self.agent.system_prompt(self._cwd)), *history]
        messages.append(ContextMessage.user(user_message))
        return replace(context, messages=messages)

    def _request(self, context: Context, allowed: frozenset[str] | None) -> ChatRequest:
        agent = self.agent
        tools = self._registry.definitions(allowed) if agent.model.tools_supported else []
        return ChatRequest(
            model=agent.model.id,
            messages=list(context.messages),
            tools=tools,
            max_tokens=agent.max_tokens,
            reasoning=agent.reasoning,
            temperature=agent.agent.temperature,
        )

    async def _execute_tools(self, message: ChatCompletionMessage, ctx: ToolCallContext) -> list[ToolResult]:
        """Run the calls one at a time, in the order the model emitted them."""
        results = []
        for call in message.tool_calls:
            await self._send(EventType.TOOL_CALL_START, call_id=call.call_id, name=call.name, arguments=call.arguments)
            output = await self._registry.execute(call, ctx)
            if output.is_error:
                logger.warning("Tool call failed: %s arguments=%s output=%s", call.name, call.arguments, output.text)
            await self._send(
                EventType.TOOL_CALL_END,
                call_id=call.call_id,
                name=call.name,
                is_error=output.is_error,
                output=output.text,
            )
            results.append(ToolResult(call_id=call.call_id, name=call.name, output=output))
        return results

    def _commit(self, messages: list[ContextMessage], reply: ChatCompletionMessage) -> None:
        context = self.conversation.context
        committed = replace(context, messages=[*context.messages, *messages], usage=reply.usage)
        self.conversation = replace(self.conversation, context=committed)

    async def _compact(self) -> None:
        self.state = TurnState.COMPACTING
        before = len(self.conversation.context.messages)
        compacted = await self.compactor.compact(self.conversation.context)
        self.conversation = replace(self.conversation, context=compacted)
        after = len(compacted.messages)
        if after != before:
            await self._send(EventType.COMPACTION, messages_before=before, messages_after=after)
            await self._save()

    async def _save(self) -> None:
        if self._persist is not None:
            await self._persist(self.conversation)
