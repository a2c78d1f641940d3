"""Policy data types: permissions, operations, rules and policies.

Rules and policies are pydantic models so a permissions YAML file parses
straight into them. Operations are frozen dataclasses so they can be used
as decision-cache keys.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

_WILDCARDS = frozenset("*?[]")


class Permission(StrEnum):
    ALLOW = "allow"
    CONFIRM = "confirm"
    DENY = "deny"

    @property
    def strictness(self) -> int:
        return _STRICTNESS[self]

    def invert(self) -> Permission:
        return Permission.ALLOW if self == Permission.DENY else Permission.DENY


_STRICTNESS = {Permission.ALLOW: 0, Permission.CONFIRM: 1, Permission.DENY: 2}


def strictest(permissions: list[Permission]) -> Permission:
    return max(permissions, key=lambda p: p.strictness)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class OperationKind(StrEnum):
    WRITE = "write"
    READ = "read"
    EXECUTE = "execute"
    FETCH = "fetch"


@dataclass(frozen=True)
class WriteOperation:
    path: str
    cwd: str
    message: str = ""
    kind: OperationKind = OperationKind.WRITE

    @property
    def subject(self) -> str:
        return self.path


@dataclass(frozen=True)
class ReadOperation:
    path: str
    cwd: str
    message: str = ""
    kind: OperationKind = OperationKind.READ

    @property
    def subject(self) -> str:
        return self.path


@dataclass(frozen=True)
class ExecuteOperation:
    command: str
    cwd: str
    kind: OperationKind = OperationKind.EXECUTE

    @property
    def subject(self) -> str:
        return self.command

    @property
    def message(self) -> str:
        return f"Execute: {self.command}"


@dataclass(frozen=True)
class FetchOperation:
    url: str
    cwd: str
    message: str = ""
    kind: OperationKind = OperationKind.FETCH

    @property
    def subject(self) -> str:
        return self.url


PermissionOperation = Union[WriteOperation, ReadOperation, ExecuteOperation, FetchOperation]


def operation_to_dict(operation: PermissionOperation) -> dict[str, Any]:
    return {
        "kind": operation.kind.value,
        "subject": operation.subject,
        "cwd": operation.cwd,
        "message": operation.message,
    }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def match_pattern(pattern: str, target: str) -> bool:
    """Glob match where `*` also crosses path separators."""
    return fnmatchcase(target, pattern)


def literal_count(pattern: str) -> int:
    return sum(1 for ch in pattern if ch not in _WILDCARDS)


class _RuleBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    dir: str | None = None

    def _pattern(self) -> str:
        raise NotImplementedError

    def _kind(self) -> OperationKind:
        raise NotImplementedError

    def matches(self, operation: PermissionOperation) -> bool:
        if operation.kind != self._kind():
            return False
        if not match_pattern(self._pattern(), operation.subject):
            return False
        return self.dir is None or match_pattern(self.dir, operation.cwd)

    def specificity(self) -> tuple[int, int]:
        """(literal chars in the subject pattern, literal chars in the dir pattern)."""
        return literal_count(self._pattern()), literal_count(self.dir) if self.dir else 0


class WriteRule(_RuleBase):
    write: str

    def _pattern(self) -> str:
        return self.write

    def _kind(self) -> OperationKind:
        return OperationKind.WRITE

    def __str__(self) -> str:
        return f"write '{self.write}'" + (f" in '{self.dir}'" if self.dir else "")


class ReadRule(_RuleBase):
    read: str

    def _pattern(self) -> str:
        return self.read

    def _kind(self) -> OperationKind:
        return OperationKind.READ

    def __str__(self) -> str:
        return f"read '{self.read}'" + (f" in '{self.dir}'" if self.dir else "")


class ExecuteRule(_RuleBase):
    command: str

    def _pattern(self) -> str:
        return self.command

    def _kind(self) -> OperationKind:
        return OperationKind.EXECUTE

    def __str__(self) -> str:
        return f"execute '{self.command}'" + (f" in '{self.dir}'" if self.dir else "")


class FetchRule(_RuleBase):
    url: str

    def _pattern(self) -> str:
        return self.url

    def _kind(self) -> OperationKind:
        return OperationKind.FETCH

    def __str__(self) -> str:
        return f"fetch '{self.url}'" + (f" in '{self.dir}'" if self.dir else "")


Rule = Union[WriteRule, ReadRule, ExecuteRule, FetchRule]

Specificity = tuple[int, int]
Verdict = tuple[Specificity, Permission]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class SimplePolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    permission: Permission
    rule: Rule

    def evaluate(self, operation: PermissionOperation) -> Verdict | None:
        if self.rule.matches(operation):
            return self.rule.specificity(), self.permission
        return None

    def __str__(self) -> str:
        return f"{self.permission.value} {self.rule}"


class AllPolicy(BaseModel):
    """Matches only when every member matches; the strictest member decides."""

    model_config = ConfigDict(extra="forbid")

    all: list[Policy]

    def evaluate(self, operation: PermissionOperation) -> Verdict | None:
        verdicts = [p.evaluate(operation) for p in self.all]
        if not verdicts or any(v is None for v in verdicts):
            return None
        return max(v[0] for v in verdicts), strictest([v[1] for v in verdicts])

    def __str__(self) -> str:
        return "all(" + ", ".join(str(p) for p in self.all) + ")"


class AnyPolicy(BaseModel):
    """Matches when any member matches; the most specific match decides."""

    model_config = ConfigDict(extra="forbid")

    any: list[Policy]

    def evaluate(self, operation: PermissionOperation) -> Verdict | None:
        return pick_verdict([p.evaluate(operation) for p in self.any])

    def __str__(self) -> str:
        return "any(" + ", ".join(str(p) for p in self.any) + ")"


class NotPolicy(BaseModel):
    """Inverts a matching inner policy: Deny becomes Allow, Allow and Confirm become Deny."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    not_: Policy = Field(alias="not")

    def evaluate(self, operation: PermissionOperation) -> Verdict | None:
        verdict = self.not_.evaluate(operation)
        if verdict is None:
            return None
        specificity, permission = verdict
        if permission == Permission.CONFIRM:
            return specificity, Permission.DENY
        return specificity, permission.invert()

    def __str__(self) -> str:
        return f"not({self.not_})"


Policy = Union[SimplePolicy, AllPolicy, AnyPolicy, NotPolicy]

AllPolicy.model_rebuild()
AnyPolicy.model_rebuild()
NotPolicy.model_rebuild()


def pick_verdict(verdicts: list[Verdict | None]) -> Verdict | None:
    """Most specific verdict wins; among equally specific ones the strictest wins."""
    matched = [v for v in verdicts if v is not None]
    if not matched:
        return None
    best = max(v[0] for v in matched)
    return best, strictest([p for s, p in matched if s == best])


class PolicyConfig(BaseModel):
    """Ordered collection of policies plus the fallback permission."""

    model_config = ConfigDict(populate_by_name=True)

    policies: list[Policy] = Field(default_factory=list)
    default: Permission = Permission.CONFIRM

    @field_validator("default")
    @classmethod
    def _default_not_allow(cls, value: Permission) -> Permission:
        if value == Permission.ALLOW:
            raise ValueError("default permission must be 'confirm' or 'deny', never 'allow'")
        return value

    def add_policy(self, policy: Policy) -> PolicyConfig:
        if policy in self.policies:
            return self
        return self.model_copy(update={"policies": [*self.policies, policy]})

    def to_yaml_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def __str__(self) -> str:
        if not self.policies:
            return "No policies defined"
        return "Policies:\n" + "\n".join(f"- {p}" for p in self.policies)
