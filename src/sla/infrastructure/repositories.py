"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from pathlib import Path
from typing import List, Optional
from datetime import datetime, time, timedelta, timezone
from uuid import UUID, uuid4

import yaml
from sqlalchemy import select, update, delete, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from src.sla.application import (
    IWorkItemRepository, ISlaRuleRepository, IEscalationRepository,
    WorkItemPage, SlaRuleCreateDTO
)
from src.sla.domain import (
    BusinessHoursConfig, EscalationEvent, EscalationLevel, NotificationSettings,
    SlaRule, SlaState, WorkItem, as_utc
)
from src.sla.infrastructure.models import SlaRuleModel, WorkItemModel, EscalationEventModel
from src.config import TERMINAL_STATUS_CATEGORIES
from src.core import ConfigurationException, RepositoryException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(value)
    except (TypeError, ValueError):
        return None


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


# ========== Rules ==========

def rule_to_domain(model: SlaRuleModel) -> SlaRule:
    """Convert rule row to domain entity."""
    hours = model.business_hours or {}
    notifications = model.notification_settings or {}

    business_hours = BusinessHoursConfig(
        enabled=hours.get("enabled", True),
        timezone=hours.get("timezone", "Asia/Kolkata"),
        working_days=tuple(hours.get("working_days", BusinessHoursConfig().working_days)),
        start_time=time.fromisoformat(hours.get("start_time", "09:00")),
        end_time=time.fromisoformat(hours.get("end_time", "18:00"))
    )
    notification_settings = NotificationSettings(
        notify_on_escalation=notifications.get("notify_on_escalation", True),
        notify_on_sla_breach=notifications.get("notify_on_sla_breach", True),
        channels=tuple(notifications.get("channels", NotificationSettings().channels))
    )

    return SlaRule(
        id=model.id,
        name=model.rule_name,
        description=model.description,
        info_type=model.info_type,
        priority=model.priority,
        channel=model.request_channel,
        response_time=timedelta(hours=model.response_time_hours),
        resolution_time=timedelta(hours=model.resolution_time_hours),
        escalation_levels=[
            EscalationLevel(
                level=entry["level"],
                escalate_after=timedelta(hours=entry["escalation_time_hours"]),
                escalate_to_role=entry["escalate_to_role"],
                escalate_to_team=entry.get("escalate_to_team"),
                escalate_to_user=entry.get("escalate_to_user"),
                channels=tuple(entry.get("channels", ()))
            )
            for entry in (model.escalation_levels or [])
        ],
        business_hours=business_hours,
        notification_settings=notification_settings,
        is_active=model.is_active,
        is_default=model.is_default,
        created_at=_optional_utc(model.created_at),
        updated_at=_optional_utc(model.updated_at)
    )


def _apply_rule(model: SlaRuleModel, rule: SlaRule) -> None:
    """Copy domain rule fields onto a row."""
    hours = rule.business_hours
    model.rule_name = rule.name
    model.description = rule.description
    model.info_type = rule.info_type
    model.priority = rule.priority
    model.request_channel = rule.channel
    model.response_time_hours = _hours(rule.response_time)
    model.resolution_time_hours = _hours(rule.resolution_time)
    model.escalation_levels = [
        {
            "level": level.level,
            "escalation_time_hours": _hours(level.escalate_after),
            "escalate_to_role": level.escalate_to_role,
            "escalate_to_team": level.escalate_to_team,
            "escalate_to_user": level.escalate_to_user,
            "channels": list(level.channels)
        }
        for level in rule.escalation_levels
    ]
    model.business_hours = {
        "enabled": hours.enabled,
        "timezone": hours.timezone,
        "working_days": list(hours.working_days),
        "start_time": hours.start_time.strftime("%H:%M"),
        "end_time": hours.end_time.strftime("%H:%M")
    }
    model.notification_settings = {
        "notify_on_escalation": rule.notification_settings.notify_on_escalation,
        "notify_on_sla_breach": rule.notification_settings.notify_on_sla_breach,
        "channels": list(rule.notification_settings.channels)
    }
    model.is_active = rule.is_active
    model.is_default = rule.is_default


class SQLAlchemySlaRuleRepository(ISlaRuleRepository):
    """
    SQLAlchemy implementation of SLA rule repository.

    Rule IDs follow ``SLA-YYYYMMDD-NNNN``, numbered per creation day.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, rule_id: str) -> Optional[SlaRuleModel]:
        stmt = (
            select(SlaRuleModel)
            .where(SlaRuleModel.id == rule_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _next_id(self, day: datetime) -> str:
        prefix = f"SLA-{day:%Y%m%d}-"
        stmt = select(func.max(SlaRuleModel.id)).where(SlaRuleModel.id.like(f"{prefix}%"))
        result = await self._session.execute(stmt)
        latest = result.scalar_one_or_none()
        sequence = int(latest.rsplit("-", 1)[1]) + 1 if latest else 1
        return f"{prefix}{sequence:04d}"

    async def list_all(self) -> List[SlaRule]:
        stmt = (
            select(SlaRuleModel)
            .order_by(SlaRuleModel.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [rule_to_domain(model) for model in result.scalars().all()]

    async def get(self, rule_id: str) -> Optional[SlaRule]:
        model = await self._get_model(rule_id)
        return rule_to_domain(model) if model else None

    async def create(self, rule: SlaRule) -> SlaRule:
        """Create new rule."""
        now = datetime.now(timezone.utc)
        rule_id = rule.id or await self._next_id(now)

        if await self._get_model(rule_id) is not None:
            raise RepositoryException(f"SLA rule {rule_id} already exists")

        model = SlaRuleModel(id=rule_id, created_at=now, updated_at=now)
        _apply_rule(model, rule)

        self._session.add(model)
        await self._session.flush()

        return rule_to_domain(model)

    async def update(self, rule: SlaRule) -> SlaRule:
        """Update existing rule."""
        model = await self._get_model(rule.id)
        if not model:
            raise RepositoryException(f"SLA rule {rule.id} not found")

        _apply_rule(model, rule)
        model.updated_at = datetime.now(timezone.utc)
        await self._session.flush()

        return rule_to_domain(model)

    async def delete(self, rule_id: str) -> None:
        await self._session.execute(delete(SlaRuleModel).where(SlaRuleModel.id == rule_id))
        await self._session.flush()

    async def set_default(self, rule_id: str) -> SlaRule:
        """Flip the default flag of every rule in a single statement."""
        stmt = (
            update(SlaRuleModel)
            .values(is_default=case((SlaRuleModel.id == rule_id, True), else_=False))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

        rule = await self.get(rule_id)
        if rule is None:
            raise RepositoryException(f"SLA rule {rule_id} not found")
        return rule

    async def count_usage(self, rule_id: str) -> int:
        stmt = select(func.count(WorkItemModel.id)).where(WorkItemModel.sla_rule_id == rule_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ========== Work Items ==========

def _state_from_row(row) -> SlaState:
    return SlaState(
        rule_id=row.sla_rule_id,
        response_due_at=_optional_utc(row.sla_response_due_at),
        resolution_due_at=_optional_utc(row.sla_resolution_due_at),
        current_status=row.sla_status,
        highest_escalation_fired=row.sla_escalation_level,
        escalated_at=_optional_utc(row.sla_escalated_at),
        escalated_to=row.sla_escalated_to,
        version=row.sla_version
    )


def work_item_to_domain(model: WorkItemModel) -> WorkItem:
    """Convert work item row to domain entity."""
    return WorkItem(
        id=str(model.id),
        external_id=model.external_id,
        created_at=model.created_at,
        priority=model.priority,
        info_type=model.info_type,
        status_category=model.status_category,
        channel=model.request_channel,
        assigned_to=model.assigned_to,
        first_response_at=model.first_response_at,
        sla_state=_state_from_row(model)
    )


class SQLAlchemyWorkItemRepository(IWorkItemRepository):
    """
    SQLAlchemy implementation of work item repository.

    SLA state is written only through ``compare_and_swap_sla_state``,
    which bumps ``sla_version`` in the same statement.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    def _select(self):
        return select(WorkItemModel).execution_options(populate_existing=True)

    async def list_open_work_items(
        self,
        cursor: Optional[str],
        page_size: int
    ) -> WorkItemPage:
        """Keyset page of non-terminal work items ordered by id."""
        stmt = self._select().where(
            WorkItemModel.status_category.not_in(TERMINAL_STATUS_CATEGORIES)
        )
        if cursor:
            after = _as_uuid(cursor)
            if after is None:
                raise RepositoryException(f"Invalid work item cursor: {cursor}")
            stmt = stmt.where(WorkItemModel.id > after)

        stmt = stmt.order_by(WorkItemModel.id).limit(page_size + 1)
        result = await self._session.execute(stmt)
        models = result.scalars().all()

        page = models[:page_size]
        next_cursor = str(page[-1].id) if len(models) > page_size else None
        return WorkItemPage(
            items=[work_item_to_domain(m) for m in page],
            next_cursor=next_cursor
        )

    async def read_sla_state(self, item_id: str) -> SlaState:
        """Read SLA columns directly, bypassing the identity map."""
        item_uuid = _as_uuid(item_id)
        stmt = select(
            WorkItemModel.sla_rule_id,
            WorkItemModel.sla_response_due_at,
            WorkItemModel.sla_resolution_due_at,
            WorkItemModel.sla_status,
            WorkItemModel.sla_escalation_level,
            WorkItemModel.sla_escalated_at,
            WorkItemModel.sla_escalated_to,
            WorkItemModel.sla_version
        ).where(WorkItemModel.id == item_uuid)
        result = await self._session.execute(stmt)
        row = result.one_or_none()

        if row is None:
            raise RepositoryException(f"Work item {item_id} not found")
        return _state_from_row(row)

    async def compare_and_swap_sla_state(
        self,
        item_id: str,
        expected_version: int,
        new_state: SlaState
    ) -> bool:
        """Conditional update on ``sla_version``; False when the version moved."""
        item_uuid = _as_uuid(item_id)
        if item_uuid is None:
            return False

        stmt = (
            update(WorkItemModel)
            .where(and_(
                WorkItemModel.id == item_uuid,
                WorkItemModel.sla_version == expected_version
            ))
            .values(
                sla_rule_id=new_state.rule_id,
                sla_response_due_at=new_state.response_due_at,
                sla_resolution_due_at=new_state.resolution_due_at,
                sla_status=new_state.current_status,
                sla_escalation_level=new_state.highest_escalation_fired,
                sla_escalated_at=new_state.escalated_at,
                sla_escalated_to=new_state.escalated_to,
                sla_version=WorkItemModel.sla_version + 1
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get(self, item_id: str) -> Optional[WorkItem]:
        item_uuid = _as_uuid(item_id)
        if item_uuid is None:
            return None

        result = await self._session.execute(self._select().where(WorkItemModel.id == item_uuid))
        model = result.scalar_one_or_none()
        return work_item_to_domain(model) if model else None

    async def get_by_external_id(self, external_id: str) -> Optional[WorkItem]:
        stmt = self._select().where(WorkItemModel.external_id == external_id)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return work_item_to_domain(model) if model else None

    async def upsert(self, item: WorkItem) -> bool:
        """Write CRM fields; SLA columns are left untouched."""
        item_uuid = _as_uuid(item.id) or uuid4()
        result = await self._session.execute(self._select().where(WorkItemModel.id == item_uuid))
        model = result.scalar_one_or_none()

        created = model is None
        if created:
            model = WorkItemModel(id=item_uuid, external_id=item.external_id)
            self._session.add(model)

        model.priority = item.priority
        model.info_type = item.info_type
        model.request_channel = item.channel
        model.status_category = item.status_category
        model.assigned_to = item.assigned_to
        model.created_at = item.created_at
        model.first_response_at = item.first_response_at

        await self._session.flush()
        return created

    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkItem]:
        """List work items with filters."""
        stmt = self._select()

        # Apply filters
        conditions = []
        if "status_category" in filters:
            categories = filters["status_category"]
            if isinstance(categories, list):
                conditions.append(WorkItemModel.status_category.in_(categories))
            else:
                conditions.append(WorkItemModel.status_category == categories)

        for key, column in (
            ("priority", WorkItemModel.priority),
            ("info_type", WorkItemModel.info_type),
            ("request_channel", WorkItemModel.request_channel),
            ("assigned_to", WorkItemModel.assigned_to),
            ("rule_id", WorkItemModel.sla_rule_id),
        ):
            if key in filters:
                conditions.append(column == filters[key])

        if conditions:
            stmt = stmt.where(and_(*conditions))

        # Order by created_at descending
        stmt = stmt.order_by(WorkItemModel.created_at.desc())
        stmt = stmt.limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [work_item_to_domain(m) for m in result.scalars().all()]

    async def list_evaluated(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        rule_id: Optional[str] = None
    ) -> List[WorkItem]:
        stmt = self._select().where(WorkItemModel.sla_rule_id.is_not(None))
        if created_from is not None:
            stmt = stmt.where(WorkItemModel.created_at >= as_utc(created_from))
        if created_to is not None:
            stmt = stmt.where(WorkItemModel.created_at <= as_utc(created_to))
        if rule_id:
            stmt = stmt.where(WorkItemModel.sla_rule_id == rule_id)

        result = await self._session.execute(stmt.order_by(WorkItemModel.created_at))
        return [work_item_to_domain(m) for m in result.scalars().all()]

    async def checkpoint(self) -> None:
        await self._session.commit()

    async def discard(self) -> None:
        await self._session.rollback()


# ========== Escalations ==========

def _event_to_domain(model: EscalationEventModel) -> EscalationEvent:
    return EscalationEvent(
        id=str(model.id),
        item_id=str(model.item_id),
        level=model.level,
        escalated_to=model.escalated_to,
        role=model.role,
        team_id=model.team_id,
        user_id=model.user_id,
        channels=list(model.channels or []),
        fired_at=as_utc(model.fired_at),
        kind=model.kind,
        notification_required=model.notification_required,
        notification_sent=model.notification_sent,
        notification_sent_at=_optional_utc(model.notification_sent_at)
    )


class SQLAlchemyEscalationRepository(IEscalationRepository):
    """
    SQLAlchemy implementation of escalation event repository.

    Handles persistence of EscalationEvent entities.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, event: EscalationEvent) -> EscalationEvent:
        """Create new escalation event."""
        item_uuid = _as_uuid(event.item_id)
        if item_uuid is None:
            raise RepositoryException(f"Invalid work item ID: {event.item_id}")

        model = EscalationEventModel(
            id=uuid4() if not event.id else UUID(event.id),
            item_id=item_uuid,
            level=event.level,
            escalated_to=event.escalated_to,
            role=event.role,
            team_id=event.team_id,
            user_id=event.user_id,
            channels=list(event.channels),
            fired_at=event.fired_at,
            kind=event.kind,
            notification_required=event.notification_required,
            notification_sent=event.notification_sent,
            notification_sent_at=event.notification_sent_at
        )

        self._session.add(model)
        await self._session.flush()

        # Update event with generated ID
        event.id = str(model.id)

        return event

    async def mark_dispatched(self, event_id: str, sent_at: datetime) -> None:
        """Mark escalation notice as sent."""
        event_uuid = _as_uuid(event_id)
        if event_uuid is None:
            raise RepositoryException(f"Invalid escalation event ID: {event_id}")

        stmt = (
            update(EscalationEventModel)
            .where(EscalationEventModel.id == event_uuid)
            .values(notification_sent=True, notification_sent_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise RepositoryException(f"Escalation event {event_id} not found")

    async def list_for_item(self, item_id: str) -> List[EscalationEvent]:
        item_uuid = _as_uuid(item_id)
        if item_uuid is None:
            return []

        stmt = (
            select(EscalationEventModel)
            .where(EscalationEventModel.item_id == item_uuid)
            .order_by(EscalationEventModel.fired_at.asc(), EscalationEventModel.level.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_event_to_domain(m) for m in result.scalars().all()]

    async def list_pending(self, limit: int) -> List[EscalationEvent]:
        stmt = (
            select(EscalationEventModel)
            .where(
                and_(
                    EscalationEventModel.notification_required.is_(True),
                    EscalationEventModel.notification_sent.is_(False)
                )
            )
            .order_by(EscalationEventModel.fired_at.asc(), EscalationEventModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_event_to_domain(m) for m in result.scalars().all()]


# ========== YAML Seed ==========

class YAMLRuleSeedLoader:
    """
    Loads SLA rules from a YAML file.

    Entries use the same fields as the rule admin API. Rules are seeded
    only into an empty rule table.
    """

    def __init__(self, seed_path: Path):
        self._seed_path = Path(seed_path)

    def load(self) -> List[SlaRule]:
        """Parse the seed file; a missing file yields no rules."""
        if not self._seed_path.exists():
            logger.info("No SLA rule seed file", extra={"path": str(self._seed_path)})
            return []

        with open(self._seed_path, "r") as f:
            data = yaml.safe_load(f) or {}

        rules = []
        for entry in data.get("rules", []):
            entry = dict(entry)
            rule_id = entry.pop("rule_id", "")
            try:
                rules.append(SlaRuleCreateDTO(**entry).to_domain(rule_id))
            except ValueError as e:
                raise ConfigurationException(
                    f"Invalid SLA rule in {self._seed_path}: {e}",
                    details={"rule_id": rule_id}
                ) from e
        return rules

    async def seed(self, repository: ISlaRuleRepository) -> int:
        """Create seed rules when the repository is empty; returns count created."""
        if await repository.list_all():
            return 0

        rules = self.load()
        default_id = None
        for rule in rules:
            created = await repository.create(rule)
            if rule.is_default:
                default_id = created.id

        if default_id is not None:
            await repository.set_default(default_id)

        logger.info(
            "SLA rules seeded",
            extra={"path": str(self._seed_path), "rule_count": len(rules)}
        )
        return len(rules)
