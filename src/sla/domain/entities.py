"""
SLA Domain Entities
====================

Pure Python domain entities for SLA monitoring.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from src.config import NoticeKind, TERMINAL_STATUS_CATEGORIES
from src.sla.domain.calendar import as_utc
from src.sla.domain.value_objects import (
    BusinessHoursConfig, EscalationLevel, EscalationTarget, NotificationSettings
)


@dataclass
class SlaRule:
    """
    SLA rule entity.

    Applies to work items of one info type and priority, optionally
    narrowed to a single request channel. Durations are business time
    measured on ``business_hours``.
    """

    id: str
    name: str
    info_type: str
    priority: str
    response_time: timedelta
    resolution_time: timedelta

    channel: Optional[str] = None
    description: Optional[str] = None
    escalation_levels: List[EscalationLevel] = field(default_factory=list)
    is_active: bool = True
    is_default: bool = False
    business_hours: BusinessHoursConfig = field(default_factory=BusinessHoursConfig)
    notification_settings: NotificationSettings = field(default_factory=NotificationSettings)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate rule on initialization."""
        if self.response_time <= timedelta(0):
            raise ValueError("response_time must be positive")

        if self.resolution_time <= timedelta(0):
            raise ValueError("resolution_time must be positive")

        for previous, current in zip(self.escalation_levels, self.escalation_levels[1:]):
            if current.level <= previous.level:
                raise ValueError(
                    f"escalation levels must strictly increase (level {current.level} "
                    f"follows level {previous.level})"
                )
            if current.escalate_after <= previous.escalate_after:
                raise ValueError(
                    f"escalate_after must strictly increase (level {current.level})"
                )

    def matches(self, info_type: str, priority: str) -> bool:
        """Check whether rule applies to an info type and priority."""
        return self.info_type == info_type and self.priority == priority


@dataclass(frozen=True)
class SlaState:
    """
    SLA annotation carried by a work item.

    Owned by the evaluator. ``rule_id`` is bound on first evaluation
    and never changes afterwards; ``version`` is bumped by the
    persistence adapter on every successful write.
    """

    rule_id: Optional[str] = None
    response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    current_status: Optional[str] = None
    highest_escalation_fired: int = 0
    escalated_at: Optional[datetime] = None
    escalated_to: Optional[str] = None
    version: int = 0

    @property
    def is_unevaluated(self) -> bool:
        return self.rule_id is None


@dataclass
class WorkItem:
    """
    Work item entity (info request or enquiry) subject to SLA tracking.

    Owned by the CRM; the engine only reads it and writes ``sla_state``.
    """

    id: str
    external_id: str
    created_at: datetime
    priority: str
    info_type: str
    status_category: str

    channel: Optional[str] = None
    assigned_to: Optional[str] = None
    first_response_at: Optional[datetime] = None
    sla_state: SlaState = field(default_factory=SlaState)

    def __post_init__(self):
        """Validate work item on initialization."""
        self.created_at = as_utc(self.created_at)
        if self.first_response_at is not None:
            self.first_response_at = as_utc(self.first_response_at)
            if self.first_response_at < self.created_at:
                raise ValueError("first_response_at cannot be before created_at")

    @property
    def is_terminal(self) -> bool:
        """Resolved, closed or cancelled items are frozen for SLA purposes."""
        return self.status_category in TERMINAL_STATUS_CATEGORIES

    def has_responded_by(self, instant: datetime) -> bool:
        """Check if first response happened at or before an instant."""
        return self.first_response_at is not None and self.first_response_at <= instant


@dataclass
class EscalationEvent:
    """
    Escalation event entity.

    Audit record of one fired escalation level, or of a breach notice
    (``kind`` is ``NoticeKind.BREACH`` and ``level`` is 0). Written when
    the level fires; ``notification_sent`` flips once the notice is
    dispatched. Events with ``notification_required`` unset are kept
    for the audit trail only.
    """

    id: Optional[str]
    item_id: str
    level: int
    escalated_to: str
    role: str
    fired_at: datetime

    team_id: Optional[str] = None
    user_id: Optional[str] = None
    channels: List[str] = field(default_factory=list)
    kind: str = NoticeKind.ESCALATION
    notification_required: bool = True
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None

    @property
    def target(self) -> EscalationTarget:
        return EscalationTarget(role=self.role, team_id=self.team_id, user_id=self.user_id)

    @property
    def is_notification_pending(self) -> bool:
        """Check if notification still needs to be sent."""
        return self.notification_required and not self.notification_sent

    def mark_notification_sent(self, timestamp: datetime) -> None:
        """Mark notification as sent."""
        self.notification_sent = True
        self.notification_sent_at = timestamp
