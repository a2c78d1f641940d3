"""Policy file management and the Confirm flow around the pure engine.

The permissions file is YAML. It is created with defaults on first use and
rewritten when the user answers a Confirm with "accept and remember".
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlparse

import yaml

from anvil.events import ChatEvent, ConfirmChoice, DecisionChannel, EventHandler, EventType, discard_event
from anvil.policy.engine import authorize
from anvil.policy.schemas import (
    ExecuteOperation,
    ExecuteRule,
    FetchOperation,
    FetchRule,
    Permission,
    PermissionOperation,
    Policy,
    PolicyConfig,
    ReadOperation,
    ReadRule,
    SimplePolicy,
    WriteOperation,
    WriteRule,
    operation_to_dict,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICIES = PolicyConfig(
    policies=[
        SimplePolicy(permission=Permission.ALLOW, rule=ReadRule(read="*")),
        SimplePolicy(permission=Permission.CONFIRM, rule=WriteRule(write="*")),
        SimplePolicy(permission=Permission.CONFIRM, rule=ExecuteRule(command="*")),
        SimplePolicy(permission=Permission.CONFIRM, rule=FetchRule(url="*")),
    ]
)


def load_policy_file(path: Path) -> PolicyConfig:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return PolicyConfig.model_validate(data)


def save_policy_file(path: Path, config: PolicyConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config.to_yaml_dict(), sort_keys=False), encoding="utf-8")


def policy_for_operation(operation: PermissionOperation) -> Policy | None:
    """Build the Allow policy recorded by "accept and remember".

    Files are remembered by extension, fetches by host and commands by their
    first one or two words.
    """
    if isinstance(operation, (ReadOperation, WriteOperation)):
        suffix = Path(operation.path).suffix
        if not suffix:
            return None
        pattern = f"*{suffix}"
        rule = ReadRule(read=pattern) if isinstance(operation, ReadOperation) else WriteRule(write=pattern)
        return SimplePolicy(permission=Permission.ALLOW, rule=rule)

    if isinstance(operation, FetchOperation):
        parsed = urlparse(operation.url)
        pattern = f"*://{parsed.hostname}/*" if parsed.hostname else operation.url
        return SimplePolicy(permission=Permission.ALLOW, rule=FetchRule(url=pattern))

    if isinstance(operation, ExecuteOperation):
        parts = operation.command.split()
        if not parts:
            return None
        pattern = f"{parts[0]}*" if len(parts) == 1 else f"{parts[0]} {parts[1]}*"
        return SimplePolicy(permission=Permission.ALLOW, rule=ExecuteRule(command=pattern, dir=operation.cwd))

    return None


class DecisionCache:
    """Confirm answers for the rest of one turn, keyed by (kind, subject, cwd)."""

    def __init__(self) -> None:
        self._answers: dict[tuple[str, str, str], bool] = {}

    @staticmethod
    def _key(operation: PermissionOperation) -> tuple[str, str, str]:
        return operation.kind.value, operation.subject, operation.cwd

    def get(self, operation: PermissionOperation) -> bool | None:
        return self._answers.get(self._key(operation))

    def put(self, operation: PermissionOperation, allowed: bool) -> None:
        self._answers[self._key(operation)] = allowed


class PolicyService:
    """Loads the policy file and resolves operations to allow/deny.

    Allow and Deny come straight from the engine. Confirm suspends on a
    decision channel until the driver answers. Each turn may pass its own
    channel and event sink; the ones given here are the fallback.
    """

    def __init__(
        self,
        path: str | Path,
        decisions: DecisionChannel | None = None,
        emit: EventHandler = discard_event,
        defaults: PolicyConfig = DEFAULT_POLICIES,
    ) -> None:
        self._path = Path(path).expanduser()
        self._decisions = decisions or DecisionChannel()
        self._emit = emit
        self._defaults = defaults
        self._config: PolicyConfig | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def policies(self) -> PolicyConfig:
        """Current config, loading (or initializing) the file on first call."""
        if self._config is None:
            async with self._lock:
                if self._config is None:
                    self._config = await asyncio.to_thread(self._load_or_init)
        return self._config

    def _load_or_init(self) -> PolicyConfig:
        if self._path.exists():
            return load_policy_file(self._path)
        save_policy_file(self._path, self._defaults)
        logger.info("Wrote default permissions to %s", self._path)
        return self._defaults

    async def check(
        self,
        operation: PermissionOperation,
        cache: DecisionCache,
        decisions: DecisionChannel | None = None,
        emit: EventHandler | None = None,
    ) -> bool:
        """Return True when the operation may proceed."""
        config = await self.policies()
        permission = authorize(operation, config)
        logger.debug("Policy %s for %s %s", permission.value, operation.kind.value, operation.subject)

        if permission == Permission.ALLOW:
            return True
        if permission == Permission.DENY:
            return False

        cached = cache.get(operation)
        if cached is not None:
            return cached

        channel = decisions or self._decisions
        choice = await channel.request(operation_to_dict(operation))
        if choice == ConfirmChoice.REJECT:
            cache.put(operation, False)
            return False
        if choice == ConfirmChoice.ACCEPT_AND_REMEMBER:
            await self.remember(operation, emit)
        cache.put(operation, True)
        return True

    async def remember(self, operation: PermissionOperation, emit: EventHandler | None = None) -> None:
        policy = policy_for_operation(operation)
        if policy is None:
            logger.warning("Cannot derive a policy for %s %s", operation.kind.value, operation.subject)
            return
        async with self._lock:
            current = self._config or await asyncio.to_thread(self._load_or_init)
            self._config = current.add_policy(policy)
            await asyncio.to_thread(save_policy_file, self._path, self._config)
        logger.info("Remembered policy '%s' in %s", policy, self._path)
        await (emit or self._emit)(
            ChatEvent(
                type=EventType.POLICY_UPDATED,
                data={"policy": str(policy), "path": str(self._path)},
            )
        )
