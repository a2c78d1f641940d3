"""Error taxonomy for the agent runtime.

Two families:
  ToolCallError  - recovered inside the turn and re-encoded as tool-result
                   content so the model can self-correct.
  FatalTurnError - aborts the turn and is surfaced to the caller unmodified.

ProviderError carries a vendor failure to the retry classifier.
"""

from __future__ import annotations

from collections.abc import Iterable


class AnvilError(Exception):
    """Root of all runtime errors."""


# ---------------------------------------------------------------------------
# Per-tool-call failures (recoverable)
# ---------------------------------------------------------------------------


class ToolCallError(AnvilError):
    """A single tool call failed; the turn continues."""


class CallArgumentError(ToolCallError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid tool call arguments: {detail}")
        self.detail = detail


class ToolNotFoundError(ToolCallError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool {name} not found")
        self.name = name


class NotAllowedError(ToolCallError):
    def __init__(self, name: str, supported_tools: Iterable[str]) -> None:
        self.name = name
        self.supported_tools = sorted(supported_tools)
        super().__init__(
            f"Tool '{name}' is not available. Please try again with one of these tools: "
            f"[{', '.join(self.supported_tools)}]"
        )


class UnsupportedModalityError(ToolCallError):
    def __init__(self, tool_name: str, required_modality: str, supported_modalities: Iterable[str]) -> None:
        self.tool_name = tool_name
        self.required_modality = required_modality
        self.supported_modalities = list(supported_modalities)
        super().__init__(
            f"Tool '{tool_name}' requires {required_modality} modality, but model only supports: "
            f"{', '.join(self.supported_modalities)}"
        )


class CallTimeoutError(ToolCallError):
    def __init__(self, tool_name: str, timeout: float) -> None:
        self.tool_name = tool_name
        self.timeout = timeout
        minutes = timeout / 60
        super().__init__(f"Tool '{tool_name}' timed out after {minutes:g} minutes")


class EmptyToolResponseError(ToolCallError):
    def __init__(self) -> None:
        super().__init__("Empty tool call response")


class PermissionDeniedError(ToolCallError):
    """Policy returned Deny (or the user rejected a Confirm)."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__("User has denied the permission to execute this tool")


# ---------------------------------------------------------------------------
# Turn-fatal failures
# ---------------------------------------------------------------------------


class FatalTurnError(AnvilError):
    """The turn cannot continue without external intervention."""


class AuthInProgressError(FatalTurnError):
    def __init__(self) -> None:
        super().__init__("Authentication still in progress")


class AgentNotFoundError(FatalTurnError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' not found")
        self.agent_id = agent_id


class NoActiveProviderError(FatalTurnError):
    def __init__(self) -> None:
        super().__init__("No active provider configured")


class NoActiveModelError(FatalTurnError):
    def __init__(self) -> None:
        super().__init__("No active model configured")


class IterationLimitError(FatalTurnError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Turn exceeded the maximum of {limit} requests")
        self.limit = limit


class ToolFailureLimitError(FatalTurnError):
    def __init__(self, tool_name: str, limit: int) -> None:
        super().__init__(f"Tool '{tool_name}' failed {limit} times in this turn, giving up")
        self.tool_name = tool_name
        self.limit = limit


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


class ProviderError(AnvilError):
    """A typed failure decoded from a vendor response or transport."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.code = code
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"ProviderError(status_code={self.status_code!r}, error_type={self.error_type!r}, "
            f"message={self.message!r})"
        )


class EmptyCompletionError(ProviderError):
    def __init__(self) -> None:
        super().__init__("Model returned an empty completion", error_type="empty_completion")
