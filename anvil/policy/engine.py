"""Pure authorization: operation + policy config -> permission."""

from __future__ import annotations

from anvil.policy.schemas import (
    Permission,
    PermissionOperation,
    PolicyConfig,
    pick_verdict,
)


def authorize(operation: PermissionOperation, config: PolicyConfig) -> Permission:
    """Decide whether `operation` may run.

    The most specific matching policy wins. Ties go to the stricter permission
    (Deny > Confirm > Allow). With no match the config's default applies,
    which can never be Allow.
    """
    verdict = pick_verdict([policy.evaluate(operation) for policy in config.policies])
    if verdict is None:
        return config.default
    return verdict[1]
