"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, notifier),
  not concrete implementations
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from src.config import NoticeKind, SlaStatus
from src.core import (
    ConcurrentUpdateConflict, DispatchError, NoApplicableRuleError,
    ResourceNotFoundException, RuleInUseError
)
from src.sla.domain import (
    UTC, DeadlineCalculator, DueDates, EscalationEvent, EscalationTarget,
    EvaluationResult, SlaEvaluator, SlaRule, SlaRuleCatalog, SlaState, WorkItem
)
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

@dataclass(frozen=True)
class WorkItemPage:
    """One page of open work items; ``next_cursor`` is None on the last page."""
    items: List[WorkItem]
    next_cursor: Optional[str] = None


class IWorkItemRepository(ABC):
    """Interface for work item data access."""

    @abstractmethod
    async def list_open_work_items(
        self,
        cursor: Optional[str],
        page_size: int
    ) -> WorkItemPage:
        """List non-terminal work items after ``cursor``, ordered by id."""

    @abstractmethod
    async def read_sla_state(self, item_id: str) -> SlaState:
        """Read the stored SLA state with its version."""

    @abstractmethod
    async def compare_and_swap_sla_state(
        self,
        item_id: str,
        expected_version: int,
        new_state: SlaState
    ) -> bool:
        """Write ``new_state`` only if the stored version is ``expected_version``."""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[WorkItem]:
        """Get work item by internal ID."""

    @abstractmethod
    async def get_by_external_id(self, external_id: str) -> Optional[WorkItem]:
        """Get work item by CRM ID."""

    @abstractmethod
    async def upsert(self, item: WorkItem) -> bool:
        """Insert or update CRM fields; returns True when created."""

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkItem]:
        """List work items with filters."""

    @abstractmethod
    async def list_evaluated(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        rule_id: Optional[str] = None
    ) -> List[WorkItem]:
        """List work items bound to a rule."""

    @abstractmethod
    async def checkpoint(self) -> None:
        """Make pending writes durable."""

    @abstractmethod
    async def discard(self) -> None:
        """Drop pending writes."""


class ISlaRuleRepository(ABC):
    """Interface for SLA rule data access."""

    @abstractmethod
    async def list_all(self) -> List[SlaRule]:
        """All rules, active or not."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[SlaRule]:
        """Get rule by ID."""

    @abstractmethod
    async def create(self, rule: SlaRule) -> SlaRule:
        """Create rule, assigning an ID when it has none."""

    @abstractmethod
    async def update(self, rule: SlaRule) -> SlaRule:
        """Update existing rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> None:
        """Delete rule."""

    @abstractmethod
    async def set_default(self, rule_id: str) -> SlaRule:
        """Make ``rule_id`` the only default in one statement."""

    @abstractmethod
    async def count_usage(self, rule_id: str) -> int:
        """Number of work items bound to the rule."""


class IEscalationRepository(ABC):
    """Interface for escalation event data access."""

    @abstractmethod
    async def record(self, event: EscalationEvent) -> EscalationEvent:
        """Store a fired escalation."""

    @abstractmethod
    async def mark_dispatched(self, event_id: str, sent_at: datetime) -> None:
        """Mark escalation notice as sent."""

    @abstractmethod
    async def list_for_item(self, item_id: str) -> List[EscalationEvent]:
        """Escalations of a work item, oldest first."""

    @abstractmethod
    async def list_pending(self, limit: int) -> List[EscalationEvent]:
        """Events whose notice is required but not sent yet, oldest first."""


class INotificationPort(ABC):
    """Interface for escalation and breach notices."""

    @abstractmethod
    async def notify(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        escalation_level: int,
        item_id: str
    ) -> None:
        """
        Send an escalation notice.

        Raises:
            DispatchError: Notice could not be delivered
        """

    @abstractmethod
    async def notify_breach(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        item_id: str
    ) -> None:
        """
        Send an SLA breach notice.

        Raises:
            DispatchError: Notice could not be delivered
        """


# ========== Results ==========

@dataclass
class EvaluationSummary:
    """Counters of one evaluation pass."""
    evaluated: int = 0
    on_track: int = 0
    at_risk: int = 0
    breached: int = 0
    frozen: int = 0
    unresolved: int = 0
    escalations_fired: int = 0
    breach_notices: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    notices_redelivered: int = 0
    conflicts: int = 0
    errors: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    def count_status(self, status: Optional[str]) -> None:
        if status == SlaStatus.ON_TRACK:
            self.on_track += 1
        elif status == SlaStatus.AT_RISK:
            self.at_risk += 1
        elif status == SlaStatus.BREACHED:
            self.breached += 1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RuleCompliance:
    """Compliance of one rule over a reporting period."""
    rule_id: str
    rule_name: Optional[str]
    total_requests: int
    within_sla: int
    breached_sla: int
    avg_response_time_hours: Optional[float] = None

    @property
    def compliance_percentage(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return round(self.within_sla / self.total_requests * 100, 2)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ========== Application Services ==========

class SLAEvaluationService:
    """
    Service for evaluating SLA compliance and firing escalations.

    Run periodically over all open work items, or on demand for one.
    State writes are compare-and-swap; a lost race skips the item's
    notices and leaves it for the next pass.
    """

    def __init__(
        self,
        work_item_repository: IWorkItemRepository,
        rule_repository: ISlaRuleRepository,
        escalation_repository: IEscalationRepository,
        notifier: INotificationPort,
        evaluator: Optional[SlaEvaluator] = None,
        page_size: int = 100
    ):
        self._work_item_repo = work_item_repository
        self._rule_repo = rule_repository
        self._escalation_repo = escalation_repository
        self._notifier = notifier
        self._evaluator = evaluator or SlaEvaluator()
        self._page_size = page_size

    async def load_catalog(self) -> SlaRuleCatalog:
        """Snapshot of the rule set for one pass."""
        return SlaRuleCatalog(await self._rule_repo.list_all())

    async def run_pass(
        self,
        now: Optional[datetime] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> EvaluationSummary:
        """
        Evaluate every open work item once.

        Notices left pending by earlier passes are retried first, so a
        notice is delivered at least once even across dispatch outages.

        Args:
            now: Fixed evaluation instant; None reads the clock per item
            cancel: Checked between items; when set the pass stops early

        Returns:
            EvaluationSummary with per-pass counters
        """
        summary = EvaluationSummary()
        started = time.perf_counter()
        catalog = await self.load_catalog()

        logger.info(
            "SLA evaluation pass started",
            extra={"rule_count": len(catalog.rules), "page_size": self._page_size}
        )

        with log_latency(logger, "sla_evaluation_pass"):
            try:
                await self._redeliver_pending(summary)
            except Exception as e:
                summary.errors += 1
                await self._work_item_repo.discard()
                logger.error(
                    "Retrying pending SLA notices failed",
                    extra={"error": str(e)},
                    exc_info=True
                )

            cursor = None
            while True:
                page = await self._work_item_repo.list_open_work_items(cursor, self._page_size)

                for item in page.items:
                    if cancel is not None and cancel.is_set():
                        summary.cancelled = True
                        break
                    await self._evaluate_isolated(item, catalog, now or _utcnow(), summary)

                if summary.cancelled or page.next_cursor is None:
                    break
                cursor = page.next_cursor

        summary.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info("SLA evaluation pass complete", extra=summary.to_dict())
        return summary

    async def evaluate_item(
        self,
        item_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[WorkItem, EvaluationResult]:
        """
        Evaluate a single work item and apply the result.

        Errors propagate to the caller.

        Raises:
            ResourceNotFoundException: Unknown work item
            NoApplicableRuleError: No rule matches and no default exists
            ConcurrentUpdateConflict: Another writer won the race
        """
        item = await self._work_item_repo.get(item_id)
        if item is None:
            raise ResourceNotFoundException("Work item", item_id)

        catalog = await self.load_catalog()
        summary = EvaluationSummary()
        try:
            result = await self._evaluate_and_apply(item, catalog, now or _utcnow(), summary)
        except ConcurrentUpdateConflict:
            await self._work_item_repo.discard()
            raise
        return item, result

    async def _evaluate_isolated(
        self,
        item: WorkItem,
        catalog: SlaRuleCatalog,
        now: datetime,
        summary: EvaluationSummary
    ) -> None:
        """Evaluate one item of a pass; failures are counted, never raised."""
        try:
            await self._evaluate_and_apply(item, catalog, now, summary)
        except NoApplicableRuleError as e:
            summary.unresolved += 1
            logger.warning(
                "No SLA rule applies to work item",
                extra={"item_id": item.id, **e.details}
            )
        except ConcurrentUpdateConflict as e:
            summary.conflicts += 1
            await self._work_item_repo.discard()
            logger.info(
                "SLA state changed concurrently, retrying next pass",
                extra={"item_id": item.id, "expected_version": e.expected_version}
            )
        except Exception as e:
            summary.errors += 1
            await self._work_item_repo.discard()
            logger.error(
                "SLA evaluation failed for work item",
                extra={"item_id": item.id, "error": str(e)},
                exc_info=True
            )

    async def _evaluate_and_apply(
        self,
        item: WorkItem,
        catalog: SlaRuleCatalog,
        now: datetime,
        summary: EvaluationSummary
    ) -> EvaluationResult:
        state = await self._work_item_repo.read_sla_state(item.id)

        if item.is_terminal:
            summary.frozen += 1
            return EvaluationResult(state=state)

        rule = self._rule_for(item, state, catalog)
        result = self._evaluator.evaluate(item, rule, state, now)
        await self._apply(state, result, now, summary)

        summary.evaluated += 1
        summary.count_status(result.state.current_status)
        return result

    @staticmethod
    def _rule_for(item: WorkItem, state: SlaState, catalog: SlaRuleCatalog) -> SlaRule:
        """Bound rule if any, otherwise the one the catalog resolves."""
        if state.rule_id is not None:
            return catalog.get(state.rule_id)
        return catalog.resolve_rule(item.info_type, item.priority, item.channel)

    async def _apply(
        self,
        previous: SlaState,
        result: EvaluationResult,
        now: datetime,
        summary: EvaluationSummary
    ) -> None:
        """Apply evaluator commands: persist, record, then notify."""
        for command in result.persist:
            if command.state == previous:
                continue
            swapped = await self._work_item_repo.compare_and_swap_sla_state(
                command.item_id, command.expected_version, command.state
            )
            if not swapped:
                raise ConcurrentUpdateConflict(command.item_id, command.expected_version)

        recorded = []
        for command in result.breach_notices:
            event = await self._escalation_repo.record(EscalationEvent(
                id=None,
                item_id=command.item_id,
                level=0,
                escalated_to=command.target.recipient,
                role=command.target.role,
                team_id=command.target.team_id,
                user_id=command.target.user_id,
                channels=list(command.channels),
                fired_at=now,
                kind=NoticeKind.BREACH
            ))
            recorded.append(event)
            summary.breach_notices += 1
            logger.info(
                "SLA breach recorded",
                extra={"item_id": command.item_id, "notify": command.target.recipient}
            )

        for command in result.escalations:
            event = await self._escalation_repo.record(EscalationEvent(
                id=None,
                item_id=command.item_id,
                level=command.level,
                escalated_to=command.target.recipient,
                role=command.target.role,
                team_id=command.target.team_id,
                user_id=command.target.user_id,
                channels=list(command.channels),
                fired_at=now,
                notification_required=command.notify
            ))
            recorded.append(event)
            summary.escalations_fired += 1
            logger.info(
                "Escalation fired",
                extra={
                    "item_id": command.item_id,
                    "escalation_level": command.level,
                    "escalated_to": command.target.recipient
                }
            )

        await self._work_item_repo.checkpoint()

        pending = [event for event in recorded if event.is_notification_pending]
        if not pending:
            return

        for event in pending:
            await self._dispatch(event, summary)

        await self._work_item_repo.checkpoint()

    async def _dispatch(self, event: EscalationEvent, summary: EvaluationSummary) -> bool:
        """
        Send the notice of a recorded event and mark it dispatched.

        A failed notice stays pending and is sent again on a later pass.
        """
        try:
            if event.kind == NoticeKind.BREACH:
                await self._notifier.notify_breach(event.target, event.channels, event.item_id)
            else:
                await self._notifier.notify(
                    event.target, event.channels, event.level, event.item_id
                )
        except DispatchError as e:
            summary.notifications_failed += 1
            logger.warning(
                "SLA notice failed, will retry next pass",
                extra={
                    "item_id": event.item_id,
                    "notice_kind": event.kind,
                    "escalation_level": event.level,
                    "error": e.message
                }
            )
            return False

        sent_at = _utcnow()
        await self._escalation_repo.mark_dispatched(event.id, sent_at)
        event.mark_notification_sent(sent_at)
        summary.notifications_sent += 1
        return True

    async def _redeliver_pending(self, summary: EvaluationSummary) -> None:
        """Retry notices that failed on earlier passes."""
        pending = await self._escalation_repo.list_pending(self._page_size)
        if not pending:
            return

        for event in pending:
            if await self._dispatch(event, summary):
                summary.notices_redelivered += 1
        await self._work_item_repo.checkpoint()

        logger.info(
            "Pending SLA notices retried",
            extra={"pending": len(pending), "redelivered": summary.notices_redelivered}
        )


class SLAQueryService:
    """
    Read-only SLA views for the API.

    Statuses are computed on the fly from the stored state; nothing is
    written and no escalation fires.
    """

    def __init__(
        self,
        work_item_repository: IWorkItemRepository,
        rule_repository: ISlaRuleRepository,
        escalation_repository: IEscalationRepository,
        evaluator: Optional[SlaEvaluator] = None
    ):
        self._work_item_repo = work_item_repository
        self._rule_repo = rule_repository
        self._escalation_repo = escalation_repository
        self._evaluator = evaluator or SlaEvaluator()

    def preview_state(
        self,
        item: WorkItem,
        catalog: SlaRuleCatalog,
        now: datetime
    ) -> SlaState:
        """SLA state the item would have at ``now``."""
        if item.is_terminal:
            return item.sla_state
        try:
            rule = SLAEvaluationService._rule_for(item, item.sla_state, catalog)
        except (NoApplicableRuleError, ResourceNotFoundException):
            return item.sla_state
        return self._evaluator.evaluate(item, rule, item.sla_state, now).state

    async def get_item_status(
        self,
        item_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[WorkItem, SlaState, List[EscalationEvent]]:
        """
        Current SLA view of one work item.

        Raises:
            ResourceNotFoundException: Unknown work item
        """
        item = await self._work_item_repo.get(item_id)
        if item is None:
            raise ResourceNotFoundException("Work item", item_id)

        catalog = SlaRuleCatalog(await self._rule_repo.list_all())
        state = self.preview_state(item, catalog, now or _utcnow())
        escalations = await self._escalation_repo.list_for_item(item.id)
        return item, state, escalations

    async def escalation_history(self, item_id: str) -> List[EscalationEvent]:
        item = await self._work_item_repo.get(item_id)
        if item is None:
            raise ResourceNotFoundException("Work item", item_id)
        return await self._escalation_repo.list_for_item(item.id)

    async def dashboard(
        self,
        filters: dict,
        sla_status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        now: Optional[datetime] = None
    ) -> Tuple[List[Tuple[WorkItem, SlaState]], Dict[str, int]]:
        """
        Work items with their previewed SLA state plus status counts.

        ``sla_status`` filters on the previewed status; ``"unevaluated"``
        selects items no rule applies to yet.
        """
        items = await self._work_item_repo.list(filters, limit=limit, offset=offset)
        catalog = SlaRuleCatalog(await self._rule_repo.list_all())
        instant = now or _utcnow()

        rows = []
        counts = {
            SlaStatus.ON_TRACK: 0,
            SlaStatus.AT_RISK: 0,
            SlaStatus.BREACHED: 0,
            "unevaluated": 0
        }
        for item in items:
            state = self.preview_state(item, catalog, instant)
            key = state.current_status or "unevaluated"
            if sla_status and key != sla_status:
                continue
            counts[key] += 1
            rows.append((item, state))

        return rows, counts


# Serializes rule mutations within the process
_rule_admin_lock = asyncio.Lock()


class RuleAdminService:
    """
    Service for SLA rule administration.

    Mutations are validated against a catalog snapshot under a mutex,
    then written through the repository.
    """

    def __init__(
        self,
        rule_repository: ISlaRuleRepository,
        work_item_repository: Optional[IWorkItemRepository] = None
    ):
        self._rule_repo = rule_repository
        self._work_item_repo = work_item_repository

    async def _catalog(self) -> SlaRuleCatalog:
        return SlaRuleCatalog(await self._rule_repo.list_all())

    # ========== Queries ==========

    async def list_rules(
        self,
        info_type: Optional[str] = None,
        priority: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> List[SlaRule]:
        rules = await self._rule_repo.list_all()
        if info_type:
            rules = [r for r in rules if r.info_type == info_type]
        if priority:
            rules = [r for r in rules if r.priority == priority]
        if is_active is not None:
            rules = [r for r in rules if r.is_active == is_active]
        return rules

    async def get_rule(self, rule_id: str) -> SlaRule:
        rule = await self._rule_repo.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("SLA rule", rule_id)
        return rule

    async def active_rules(self) -> List[SlaRule]:
        return (await self._catalog()).active_rules()

    async def default_rule(self) -> SlaRule:
        rule = (await self._catalog()).default_rule()
        if rule is None:
            raise ResourceNotFoundException("Default SLA rule")
        return rule

    async def rules_by_info_type(self, info_type: str) -> List[SlaRule]:
        return (await self._catalog()).rules_for_info_type(info_type)

    async def calculate_sla(
        self,
        info_type: str,
        priority: str,
        channel: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> Tuple[SlaRule, DueDates]:
        """
        Deadlines a new work item would get.

        Raises:
            NoApplicableRuleError: No rule matches and no default exists
        """
        rule = (await self._catalog()).resolve_rule(info_type, priority, channel)
        due = DeadlineCalculator.compute_due_dates(rule, created_at or _utcnow())
        return rule, due

    async def performance(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        rule_id: Optional[str] = None
    ) -> List[RuleCompliance]:
        """Per-rule compliance of evaluated work items."""
        if self._work_item_repo is None:
            raise ValueError("Work item repository not configured")

        items = await self._work_item_repo.list_evaluated(created_from, created_to, rule_id)
        names = {r.id: r.name for r in await self._rule_repo.list_all()}

        grouped: Dict[str, List[WorkItem]] = {}
        for item in items:
            grouped.setdefault(item.sla_state.rule_id, []).append(item)

        report = []
        for bound_rule_id in sorted(grouped):
            bucket = grouped[bound_rule_id]
            breached = sum(
                1 for i in bucket if i.sla_state.current_status == SlaStatus.BREACHED
            )
            response_hours = [
                (i.first_response_at - i.created_at).total_seconds() / 3600
                for i in bucket if i.first_response_at is not None
            ]
            report.append(RuleCompliance(
                rule_id=bound_rule_id,
                rule_name=names.get(bound_rule_id),
                total_requests=len(bucket),
                within_sla=len(bucket) - breached,
                breached_sla=breached,
                avg_response_time_hours=(
                    round(sum(response_hours) / len(response_hours), 2)
                    if response_hours else None
                )
            ))
        return report

    # ========== Mutations ==========

    async def create_rule(self, rule: SlaRule) -> SlaRule:
        """
        Create a rule; a rule created as default takes the default over.

        Raises:
            RuleInactiveError: Rule is both default and inactive
        """
        async with _rule_admin_lock:
            catalog = await self._catalog()
            catalog.upsert(rule)

            created = await self._rule_repo.create(replace(rule, is_default=False))
            if rule.is_default:
                created = await self._rule_repo.set_default(created.id)

        logger.info(
            "SLA rule created",
            extra={"rule_id": created.id, "info_type": created.info_type, "priority": created.priority}
        )
        return created

    async def update_rule(self, rule_id: str, changes: dict) -> SlaRule:
        """
        Apply field changes to a rule.

        Work items already bound keep their computed deadlines.
        """
        async with _rule_admin_lock:
            current = await self.get_rule(rule_id)
            updated = await self._rule_repo.update(replace(current, **changes))

        logger.info(
            "SLA rule updated",
            extra={"rule_id": rule_id, "fields": sorted(changes)}
        )
        return updated

    async def delete_rule(self, rule_id: str) -> None:
        """
        Delete a rule.

        Raises:
            RuleInUseError: Work items are bound to the rule
        """
        async with _rule_admin_lock:
            await self.get_rule(rule_id)
            usage = await self._rule_repo.count_usage(rule_id)
            if usage:
                raise RuleInUseError(rule_id, usage)
            await self._rule_repo.delete(rule_id)

        logger.info("SLA rule deleted", extra={"rule_id": rule_id})

    async def set_default(self, rule_id: str) -> SlaRule:
        """
        Make a rule the only default.

        Raises:
            ResourceNotFoundException: Unknown rule
            RuleInactiveError: Rule is inactive
        """
        async with _rule_admin_lock:
            catalog = await self._catalog()
            catalog.set_default(rule_id)
            rule = await self._rule_repo.set_default(rule_id)

        logger.info("Default SLA rule set", extra={"rule_id": rule_id})
        return rule

    async def toggle_status(self, rule_id: str) -> SlaRule:
        """
        Activate or deactivate a rule.

        Raises:
            LastActiveRuleError: Rule is the default and no other rule is active
        """
        async with _rule_admin_lock:
            catalog = await self._catalog()
            previous_default = catalog.default_rule()

            toggled = catalog.toggle_active(rule_id)
            saved = await self._rule_repo.update(toggled)

            successor = catalog.default_rule()
            if successor is not None and (
                previous_default is None or successor.id != previous_default.id
            ):
                await self._rule_repo.set_default(successor.id)

        logger.info(
            "SLA rule status toggled",
            extra={
                "rule_id": rule_id,
                "is_active": saved.is_active,
                "default_rule_id": successor.id if successor else None
            }
        )
        return saved
