"""Ordered, pure transform stages.

A Pipeline has two fixed stage lists: history stages over the canonical
ContextMessage list, run before rendering, and payload stages over the
rendered vendor request.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import reduce
from typing import Any

from anvil.models import ContextMessage

Payload = dict[str, Any]
Transform = Callable[[Any], Any]
Predicate = Callable[[Any], bool]


@dataclass(frozen=True)
class Stage:
    """A named transform, optionally guarded by a predicate on its input."""

    name: str
    transform: Transform
    predicate: Predicate | None = None

    def __call__(self, value: Any) -> Any:
        if self.predicate is not None and not self.predicate(value):
            return value
        return self.transform(value)

    def when(self, predicate: Predicate) -> Stage:
        return Stage(self.name, self.transform, predicate)


def stage(transform: Transform) -> Stage:
    return Stage(transform.__name__, transform)


def _run(stages: tuple[Stage, ...], value: Any) -> Any:
    return reduce(lambda acc, s: s(acc), stages, value)


@dataclass(frozen=True)
class Pipeline:
    """Stages applied left to right. Order is fixed at construction."""

    stages: tuple[Stage, ...]
    history: tuple[Stage, ...] = ()

    def __call__(self, payload: Payload) -> Payload:
        return _run(self.stages, payload)

    def repair(self, messages: list[ContextMessage]) -> list[ContextMessage]:
        return _run(self.history, messages)

    @property
    def names(self) -> list[str]:
        return [s.name for s in (*self.history, *self.stages)]
