"""
In-memory ports and builders shared by the service tests.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from src.core import DispatchError
from src.sla.application import (
    IEscalationRepository, INotificationPort, ISlaRuleRepository,
    IWorkItemRepository, WorkItemPage
)
from src.sla.domain import (
    BusinessHoursConfig, EscalationEvent, EscalationLevel, EscalationTarget,
    NotificationSettings, SlaRule, SlaState, WorkItem
)

ALWAYS_ON = BusinessHoursConfig(enabled=False)


def make_rule(
    rule_id: str = "SLA-20240101-0001",
    info_type: str = "Brochure",
    priority: str = "High",
    channel: Optional[str] = None,
    response_hours: float = 4,
    resolution_hours: float = 24,
    levels: Sequence[tuple] = (),
    business_hours: BusinessHoursConfig = ALWAYS_ON,
    is_active: bool = True,
    is_default: bool = False,
    notify: bool = True,
    notify_breach: bool = False,
) -> SlaRule:
    """Build a rule; ``levels`` holds ``(level, hours, role)`` tuples."""
    return SlaRule(
        id=rule_id,
        name=f"{info_type} {priority}",
        info_type=info_type,
        priority=priority,
        channel=channel,
        response_time=timedelta(hours=response_hours),
        resolution_time=timedelta(hours=resolution_hours),
        escalation_levels=[
            EscalationLevel(
                level=level,
                escalate_after=timedelta(hours=hours),
                escalate_to_role=role
            )
            for level, hours, role in levels
        ],
        business_hours=business_hours,
        notification_settings=NotificationSettings(
            notify_on_escalation=notify, notify_on_sla_breach=notify_breach
        ),
        is_active=is_active,
        is_default=is_default,
    )


def make_item(
    item_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    info_type: str = "Brochure",
    priority: str = "High",
    status_category: str = "Open",
    channel: Optional[str] = None,
    first_response_at: Optional[datetime] = None,
    sla_state: Optional[SlaState] = None,
    assigned_to: Optional[str] = None,
) -> WorkItem:
    return WorkItem(
        id=item_id or str(uuid4()),
        external_id=f"CRM-{uuid4().hex[:8]}",
        created_at=created_at or datetime(2024, 3, 11, 9, 0),
        priority=priority,
        info_type=info_type,
        status_category=status_category,
        channel=channel,
        first_response_at=first_response_at,
        assigned_to=assigned_to,
        sla_state=sla_state or SlaState(),
    )


class FakeWorkItemRepository(IWorkItemRepository):
    """Work items in a dict; SLA state versioned like the SQL adapter."""

    def __init__(self, items: Sequence[WorkItem] = ()):
        self.items: Dict[str, WorkItem] = {i.id: i for i in items}
        self.states: Dict[str, SlaState] = {i.id: i.sla_state for i in items}
        self.fail_on: set = set()
        self.conflict_on: set = set()
        self.checkpoints = 0
        self.discards = 0

    def _current(self, item_id: str) -> WorkItem:
        return replace(self.items[item_id], sla_state=self.states[item_id])

    async def list_open_work_items(self, cursor, page_size) -> WorkItemPage:
        open_ids = sorted(i for i, item in self.items.items() if not item.is_terminal)
        if cursor:
            open_ids = [i for i in open_ids if i > cursor]
        page = open_ids[:page_size]
        next_cursor = page[-1] if len(open_ids) > page_size else None
        return WorkItemPage(items=[self._current(i) for i in page], next_cursor=next_cursor)

    async def read_sla_state(self, item_id: str) -> SlaState:
        if item_id in self.fail_on:
            raise RuntimeError(f"storage unavailable for {item_id}")
        return self.states[item_id]

    async def compare_and_swap_sla_state(self, item_id, expected_version, new_state) -> bool:
        if item_id in self.conflict_on or self.states[item_id].version != expected_version:
            return False
        self.states[item_id] = replace(new_state, version=expected_version + 1)
        return True

    async def get(self, item_id: str) -> Optional[WorkItem]:
        return self._current(item_id) if item_id in self.items else None

    async def get_by_external_id(self, external_id: str) -> Optional[WorkItem]:
        for item_id, item in self.items.items():
            if item.external_id == external_id:
                return self._current(item_id)
        return None

    async def upsert(self, item: WorkItem) -> bool:
        created = item.id not in self.items
        self.items[item.id] = item
        self.states.setdefault(item.id, SlaState())
        return created

    async def list(self, filters: dict, limit: int = 100, offset: int = 0) -> List[WorkItem]:
        items = [self._current(i) for i in self.items]
        for key, attr in (("priority", "priority"), ("info_type", "info_type")):
            if key in filters:
                items = [i for i in items if getattr(i, attr) == filters[key]]
        return items[offset:offset + limit]

    async def list_evaluated(self, created_from=None, created_to=None, rule_id=None) -> List[WorkItem]:
        items = [self._current(i) for i in self.items if self.states[i].rule_id is not None]
        if rule_id:
            items = [i for i in items if i.sla_state.rule_id == rule_id]
        return items

    async def checkpoint(self) -> None:
        self.checkpoints += 1

    async def discard(self) -> None:
        self.discards += 1


class FakeRuleRepository(ISlaRuleRepository):
    """Rules in a dict keyed by id."""

    def __init__(self, rules: Sequence[SlaRule] = (), usage: Optional[Dict[str, int]] = None):
        self.rules: Dict[str, SlaRule] = {r.id: r for r in rules}
        self.usage = usage or {}
        self._sequence = len(self.rules)

    async def list_all(self) -> List[SlaRule]:
        return [self.rules[k] for k in sorted(self.rules)]

    async def get(self, rule_id: str) -> Optional[SlaRule]:
        return self.rules.get(rule_id)

    async def create(self, rule: SlaRule) -> SlaRule:
        if not rule.id:
            self._sequence += 1
            rule = replace(rule, id=f"SLA-20240101-{self._sequence:04d}")
        self.rules[rule.id] = rule
        return rule

    async def update(self, rule: SlaRule) -> SlaRule:
        self.rules[rule.id] = rule
        return rule

    async def delete(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    async def set_default(self, rule_id: str) -> SlaRule:
        self.rules = {
            k: replace(r, is_default=(k == rule_id)) for k, r in self.rules.items()
        }
        return self.rules[rule_id]

    async def count_usage(self, rule_id: str) -> int:
        return self.usage.get(rule_id, 0)


class FakeEscalationRepository(IEscalationRepository):
    def __init__(self):
        self.events: List[EscalationEvent] = []

    async def record(self, event: EscalationEvent) -> EscalationEvent:
        event.id = str(uuid4())
        self.events.append(event)
        return event

    async def mark_dispatched(self, event_id: str, sent_at: datetime) -> None:
        for event in self.events:
            if event.id == event_id:
                event.mark_notification_sent(sent_at)

    async def list_for_item(self, item_id: str) -> List[EscalationEvent]:
        return [e for e in self.events if e.item_id == item_id]

    async def list_pending(self, limit: int) -> List[EscalationEvent]:
        return [e for e in self.events if e.is_notification_pending][:limit]


class RecordingNotifier(INotificationPort):
    """Records notices; raises DispatchError while ``failing`` is set."""

    def __init__(self, failing: bool = False):
        self.failing = failing
        self.sent: List[tuple] = []
        self.breaches: List[tuple] = []

    async def notify(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        escalation_level: int,
        item_id: str
    ) -> None:
        if self.failing:
            raise DispatchError("webhook down", details={"item_id": item_id})
        self.sent.append((item_id, escalation_level, target.recipient, tuple(channels)))

    async def notify_breach(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        item_id: str
    ) -> None:
        if self.failing:
            raise DispatchError("webhook down", details={"item_id": item_id})
        self.breaches.append((item_id, target.recipient, tuple(channels)))
