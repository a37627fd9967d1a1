"""Reconciliation decision for one extension attribute."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DecisionKind(str, Enum):
    NO_OP = "no_op"
    UPDATE = "update"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    new_value: str | None = None

    @property
    def requires_write(self) -> bool:
        return self.kind == DecisionKind.UPDATE


NO_OP = Decision(DecisionKind.NO_OP)
UNRESOLVED = Decision(DecisionKind.UNRESOLVED)


def values_equal(current: str | None, resolved: str | None) -> bool:
    """Case-insensitive equality where missing and empty are the same."""
    return (current or "").casefold() == (resolved or "").casefold()


def decide(current_value: str | None, resolved_value: str | None) -> Decision:
    """Decide whether the stored value must change.

    An empty resolved value is unresolved, never a request to clear the attribute.
    """
    if not resolved_value:
        return UNRESOLVED
    if values_equal(current_value, resolved_value):
        return NO_OP
    return Decision(DecisionKind.UPDATE, new_value=resolved_value)
