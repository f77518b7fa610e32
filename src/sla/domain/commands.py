"""
SLA Commands
============

Side effects requested by the evaluator. The evaluator never performs
them itself; the application layer applies them through the
persistence and notification ports.
"""

from dataclasses import dataclass, field
from typing import List, Tuple, Union

from src.sla.domain.entities import SlaState
from src.sla.domain.value_objects import EscalationTarget


@dataclass(frozen=True)
class Escalate:
    """Route a work item to the target of an escalation level."""
    item_id: str
    level: int
    target: EscalationTarget
    channels: Tuple[str, ...]
    notify: bool = True


@dataclass(frozen=True)
class NotifyBreach:
    """Tell the target that a work item has just breached its SLA."""
    item_id: str
    target: EscalationTarget
    channels: Tuple[str, ...]


@dataclass(frozen=True)
class PersistState:
    """Write a new SLA state if the stored version is still ``expected_version``."""
    item_id: str
    expected_version: int
    state: SlaState


Command = Union[Escalate, NotifyBreach, PersistState]


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of evaluating one work item."""
    state: SlaState
    commands: List[Command] = field(default_factory=list)

    @property
    def escalations(self) -> List[Escalate]:
        return [c for c in self.commands if isinstance(c, Escalate)]

    @property
    def breach_notices(self) -> List[NotifyBreach]:
        return [c for c in self.commands if isinstance(c, NotifyBreach)]

    @property
    def persist(self) -> List[PersistState]:
        return [c for c in self.commands if isinstance(c, PersistState)]
