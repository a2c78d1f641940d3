"""Policy - authorization of file, shell and network operations."""

from anvil.policy.engine import authorize
from anvil.policy.schemas import (
    AllPolicy,
    AnyPolicy,
    ExecuteOperation,
    ExecuteRule,
    FetchOperation,
    FetchRule,
    NotPolicy,
    Permission,
    PermissionOperation,
    PolicyConfig,
    ReadOperation,
    ReadRule,
    SimplePolicy,
    WriteOperation,
    WriteRule,
)
from anvil.policy.service import DecisionCache, PolicyService, policy_for_operation

__all__ = [
    "AllPolicy",
    "AnyPolicy",
    "DecisionCache",
    "ExecuteOperation",
    "ExecuteRule",
    "FetchOperation",
    "FetchRule",
    "NotPolicy",
    "Permission",
    "PermissionOperation",
    "PolicyConfig",
    "PolicyService",
    "ReadOperation",
    "ReadRule",
    "SimplePolicy",
    "WriteOperation",
    "WriteRule",
    "authorize",
    "policy_for_operation",
]
