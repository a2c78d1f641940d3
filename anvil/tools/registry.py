"""Tool registry and executor.

Resolves a tool call to a handler and runs it through the gate:
lookup -> allow-list -> arguments -> modality -> policy -> timeout.
A side-effecting tool without its own operation is checked as an Execute
of the tool name.
Every call yields exactly one ToolOutput. Gate failures and handler faults
become error content in that output; only cancellation escapes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any

from jsonschema import Draft202012Validator

from anvil.errors import (
    CallArgumentError,
    CallTimeoutError,
    EmptyToolResponseError,
    NotAllowedError,
    PermissionDeniedError,
    ToolCallError,
    ToolNotFoundError,
    UnsupportedModalityError,
)
from anvil.events import ChatEvent, DecisionChannel, EventHandler, EventType, discard_event
from anvil.models import ConversationMetrics, Modality, ToolCall, ToolDefinition, ToolOutput
from anvil.policy.schemas import ExecuteOperation, PermissionOperation
from anvil.policy.service import DecisionCache, PolicyService

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "<permission_denied>User has denied the permission to execute this tool</permission_denied>"

ToolHandler = Callable[..., Awaitable[ToolOutput]]
OperationFactory = Callable[[dict[str, Any], str], PermissionOperation | None]
ModalityFactory = Callable[[dict[str, Any]], frozenset[Modality]]


@dataclass
class ToolCallContext:
    """Per-turn state handed to every tool execution."""

    cwd: str
    conversation_id: str | None = None
    emit: EventHandler = discard_event
    decisions: DecisionCache = field(default_factory=DecisionCache)
    channel: DecisionChannel | None = None
    metrics: ConversationMetrics | None = None
    allowed_tools: frozenset[str] | None = None  # None = every registered tool
    model_modalities: frozenset[Modality] = frozenset({Modality.TEXT})

    async def send_title(self, title: str, subtitle: str | None = None) -> None:
        await self.emit(
            ChatEvent(
                type=EventType.TITLE,
                data={"title": title, "subtitle": subtitle},
                conversation_id=self.conversation_id,
            )
        )


@dataclass
class Tool:
    definition: ToolDefinition
    handler: ToolHandler
    operation: OperationFactory | None = None
    modalities: ModalityFactory | None = None
    validator: Draft202012Validator | None = None

    def __post_init__(self) -> None:
        if self.validator is None:
            Draft202012Validator.check_schema(self.definition.input_schema)
            self.validator = Draft202012Validator(self.definition.input_schema)

    @property
    def name(self) -> str:
        return self.definition.name

    def required_modalities(self, arguments: dict[str, Any]) -> frozenset[Modality]:
        if self.modalities is not None:
            return self.modalities(arguments)
        return self.definition.modalities


def filter_allowed(names: Iterable[str], patterns: Iterable[str] | None) -> list[str]:
    """Names matching any allow-list pattern (globs accepted). None allows all."""
    names = list(names)
    if patterns is None:
        return names
    patterns = list(patterns)
    return [n for n in names if any(fnmatchcase(n, p) for p in patterns)]


class ToolRegistry:
    """Name -> handler mapping for the lifetime of the process."""

    def __init__(
        self,
        policy: PolicyService | None = None,
        *,
        timeout: float = 300.0,
        restricted: bool = True,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._policy = policy
        self._timeout = timeout
        self._restricted = restricted

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing tool registration for %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self, allowed: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Definitions for the tools the agent may use, in registration order."""
        return [self._tools[n].definition for n in filter_allowed(self._tools, allowed)]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, call: ToolCall, ctx: ToolCallContext) -> ToolOutput:
        try:
            output = await self._execute(call, ctx)
        except PermissionDeniedError:
            # Not a failure: the model is told and the turn goes on
            logger.info("Permission denied for %s", call.name)
            return ToolOutput(text=PERMISSION_DENIED)
        except ToolCallError as e:
            logger.warning("Tool %s failed: %s (arguments=%s)", call.name, e, call.arguments)
            return ToolOutput.error(str(e))
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            return ToolOutput.error(f"Tool '{call.name}' failed: {e}")
        finally:
            if ctx.metrics is not None:
                ctx.metrics.tool_calls += 1
        return output

    async def _execute(self, call: ToolCall, ctx: ToolCallContext) -> ToolOutput:
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolNotFoundError(call.name)

        if ctx.allowed_tools is not None and call.name not in ctx.allowed_tools:
            raise NotAllowedError(call.name, [n for n in self._tools if n in ctx.allowed_tools])

        arguments = self._validate_arguments(tool, call.arguments)

        for modality in sorted(tool.required_modalities(arguments)):
            if modality not in ctx.model_modalities:
                raise UnsupportedModalityError(call.name, modality.value, [m.value for m in sorted(ctx.model_modalities)])

        if self._restricted and self._policy is not None:
            operation = self._operation_for(tool, arguments, ctx.cwd)
            if operation is not None and not await self._policy.check(
                operation, ctx.decisions, ctx.channel, ctx.emit
            ):
                raise PermissionDeniedError(operation.subject)

        try:
            output = await asyncio.wait_for(tool.handler(ctx, **arguments), timeout=self._timeout)
        except TimeoutError:
            raise CallTimeoutError(call.name, self._timeout) from None

        if output is None or (not output.text and not output.is_error):
            raise EmptyToolResponseError()
        return output

    @staticmethod
    def _operation_for(tool: Tool, arguments: dict[str, Any], cwd: str) -> PermissionOperation | None:
        """What the policy is asked about. Side-effecting tools are always asked."""
        operation = tool.operation(arguments, cwd) if tool.operation is not None else None
        if operation is None and tool.definition.side_effecting:
            operation = ExecuteOperation(command=tool.name, cwd=cwd)
        return operation

    @staticmethod
    def _validate_arguments(tool: Tool, arguments: dict[str, Any] | str) -> dict[str, Any]:
        if isinstance(arguments, str):
            raise CallArgumentError(f"arguments are not valid JSON: {arguments[:200]}")
        if not isinstance(arguments, dict):
            raise CallArgumentError(f"expected a JSON object, got {type(arguments).__name__}")
        errors = sorted(tool.validator.iter_errors(arguments), key=lambda e: list(e.path))
        if errors:
            detail = "; ".join(
                f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            )
            raise CallArgumentError(detail)
        return arguments
