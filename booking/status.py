"""Configurable reservation status machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class StatusMachine:
    """Directed graph over reservation statuses.

    ``blocking_statuses`` occupy resource capacity; ``terminal_statuses`` have no
    outgoing edges. The graph is validated once on construction so hosts can
    supply their own lifecycle without touching engine code.
    """

    statuses: tuple[str, ...]
    default_status: str
    blocking_statuses: frozenset[str]
    terminal_statuses: frozenset[str]
    transitions: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        known = set(self.statuses)
        if self.default_status not in known:
            raise ValueError(f"default_status {self.default_status!r} is not a configured status.")

        unknown_blocking = sorted(self.blocking_statuses - known)
        if unknown_blocking:
            raise ValueError(f"blocking_statuses reference unknown statuses: {', '.join(unknown_blocking)}")

        unknown_terminal = sorted(self.terminal_statuses - known)
        if unknown_terminal:
            raise ValueError(f"terminal_statuses reference unknown statuses: {', '.join(unknown_terminal)}")

        for source, targets in self.transitions.items():
            if source not in known:
                raise ValueError(f"transitions reference unknown status {source!r}.")
            unknown_targets = sorted(set(targets) - known)
            if unknown_targets:
                raise ValueError(f"transitions from {source!r} reference unknown statuses: {', '.join(unknown_targets)}")
            if source in self.terminal_statuses and targets:
                raise ValueError(f"terminal status {source!r} cannot have outgoing transitions.")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> StatusMachine:
        transitions = {str(key): tuple(value or ()) for key, value in (data.get("transitions") or {}).items()}
        return cls(
            statuses=tuple(data["statuses"]),
            default_status=data["default_status"],
            blocking_statuses=frozenset(data.get("blocking_statuses") or ()),
            terminal_statuses=frozenset(data.get("terminal_statuses") or ()),
            transitions=transitions,
        )

    def is_blocking(self, status: Optional[str]) -> bool:
        return status in self.blocking_statuses

    def is_terminal(self, status: Optional[str]) -> bool:
        return status in self.terminal_statuses


DEFAULT_STATUS_MACHINE = StatusMachine(
    statuses=("pending", "confirmed", "completed", "cancelled", "no-show"),
    default_status="pending",
    blocking_statuses=frozenset({"pending", "confirmed"}),
    terminal_statuses=frozenset({"completed", "cancelled", "no-show"}),
    transitions={
        "pending": ("confirmed", "cancelled"),
        "confirmed": ("completed", "cancelled", "no-show"),
        "completed": (),
        "cancelled": (),
        "no-show": (),
    },
)


def is_blocking_status(status: Optional[str], machine: StatusMachine = DEFAULT_STATUS_MACHINE) -> bool:
    return machine.is_blocking(status)


def validate_transition(from_status: str, to_status: str, machine: StatusMachine = DEFAULT_STATUS_MACHINE) -> TransitionResult:
    allowed = machine.transitions.get(from_status)
    if allowed is None:
        return TransitionResult(valid=False, reason=f"Unknown status: {from_status}")
    if to_status not in allowed:
        return TransitionResult(valid=False, reason=f'Cannot transition from "{from_status}" to "{to_status}"')
    return TransitionResult(valid=True)


def allowed_create_statuses(machine: StatusMachine = DEFAULT_STATUS_MACHINE, *, privileged: bool = False) -> list[str]:
    """Statuses a new reservation may start in.

    Creation has no ``from`` status, so this is policy rather than a machine edge:
    everyone may start in the default status, privileged actors may also start
    one hop further along, but never in a terminal status.
    """
    allowed = [machine.default_status]
    if privileged:
        for status in machine.transitions.get(machine.default_status, ()):
            if status not in allowed and not machine.is_terminal(status):
                allowed.append(status)
    return allowed
