"""
SLA Domain Services
===================

Stateless business logic for deadlines, escalation and status.

Everything here is a pure function of its inputs: no clock reads,
no I/O. Callers pass ``now`` explicitly.
"""

import logging
import warnings
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from src.config import EscalationRole, SlaStatus
from src.core import MalformedRuleWarning
from src.sla.domain.calendar import BusinessCalendar, as_utc
from src.sla.domain.commands import Escalate, EvaluationResult, NotifyBreach, PersistState
from src.sla.domain.entities import SlaRule, SlaState, WorkItem
from src.sla.domain.value_objects import DueDates, EscalationLevel, EscalationTarget

logger = logging.getLogger(__name__)

DEFAULT_WARNING_FRACTION = 0.25


class DeadlineCalculator:
    """Computes due instants from a rule and a creation time."""

    @staticmethod
    def compute_due_dates(rule: SlaRule, created_at: datetime) -> DueDates:
        """
        Calculate response and resolution deadlines.

        ``resolution_due_at >= response_due_at`` is not enforced; check
        ``DueDates.is_malformed`` to detect the inverted case.
        """
        calendar = BusinessCalendar(rule.business_hours)
        return DueDates(
            response_due_at=calendar.add_business_duration(created_at, rule.response_time),
            resolution_due_at=calendar.add_business_duration(created_at, rule.resolution_time)
        )


class EscalationMatcher:
    """Picks the escalation level a work item has reached."""

    @staticmethod
    def next_escalation(
        rule: SlaRule,
        elapsed: timedelta,
        already_fired_level: int
    ) -> Optional[EscalationLevel]:
        """
        Highest level reached that has not fired yet.

        When several levels qualify at once only the highest is returned;
        the ones below it are superseded and never fire.

        Args:
            rule: Rule carrying the escalation ladder
            elapsed: Business time since creation
            already_fired_level: Highest level fired so far (0 = none)

        Returns:
            The level to fire, or None
        """
        reached = None
        for level in rule.escalation_levels:
            if level.escalate_after <= elapsed and level.level > already_fired_level:
                if reached is None or level.level > reached.level:
                    reached = level
        return reached


class SlaEvaluator:
    """
    Evaluates one work item against its rule.

    ``evaluate`` is a pure function of ``(item, rule, state, now)``
    returning the new state and the commands to apply.
    """

    def __init__(self, warning_fraction: float = DEFAULT_WARNING_FRACTION):
        if not 0 < warning_fraction < 1:
            raise ValueError("warning_fraction must be between 0 and 1")
        self.warning_fraction = warning_fraction

    def evaluate(
        self,
        item: WorkItem,
        rule: SlaRule,
        state: Optional[SlaState],
        now: datetime
    ) -> EvaluationResult:
        """
        Evaluate a work item.

        Args:
            item: Work item under evaluation
            rule: Its rule (resolved by the caller, or the one bound in state)
            state: Current SLA state; None uses ``item.sla_state``
            now: Evaluation instant

        Returns:
            EvaluationResult with new state and commands
        """
        current = state if state is not None else item.sla_state
        now = as_utc(now)

        if item.is_terminal:
            return EvaluationResult(state=current, commands=[])

        new_state = self._bind_rule(item, rule, current)

        calendar = BusinessCalendar(rule.business_hours)
        elapsed = calendar.elapsed_business_duration(item.created_at, now)

        status = self.compute_status(item, calendar, new_state, now)
        already_breached = current.current_status == SlaStatus.BREACHED
        if already_breached:
            status = SlaStatus.BREACHED
        new_state = replace(new_state, current_status=status)

        commands = []
        if (
            status == SlaStatus.BREACHED
            and not already_breached
            and rule.notification_settings.notify_on_sla_breach
        ):
            commands.append(NotifyBreach(
                item_id=item.id,
                target=self.breach_target(item, rule),
                channels=rule.notification_settings.channels
            ))

        level = EscalationMatcher.next_escalation(
            rule, elapsed, new_state.highest_escalation_fired
        )
        if level is not None:
            target = level.target
            commands.append(Escalate(
                item_id=item.id,
                level=level.level,
                target=target,
                channels=level.channels or rule.notification_settings.channels,
                notify=rule.notification_settings.notify_on_escalation
            ))
            new_state = replace(
                new_state,
                highest_escalation_fired=level.level,
                escalated_at=now,
                escalated_to=target.recipient
            )

        commands.append(PersistState(
            item_id=item.id,
            expected_version=current.version,
            state=new_state
        ))
        return EvaluationResult(state=new_state, commands=commands)

    def _bind_rule(self, item: WorkItem, rule: SlaRule, state: SlaState) -> SlaState:
        """Bind the rule and its deadlines on first evaluation."""
        if state.rule_id is not None:
            if state.rule_id != rule.id:
                raise ValueError(
                    f"work item {item.id} is bound to rule {state.rule_id}, got {rule.id}"
                )
            return state

        due = DeadlineCalculator.compute_due_dates(rule, item.created_at)
        if due.is_malformed:
            message = (
                f"SLA rule {rule.id} resolves before it responds "
                f"({rule.resolution_time} < {rule.response_time})"
            )
            logger.warning(
                "Malformed SLA rule",
                extra={"rule_id": rule.id, "item_id": item.id}
            )
            warnings.warn(MalformedRuleWarning(message), stacklevel=3)

        return replace(
            state,
            rule_id=rule.id,
            response_due_at=due.response_due_at,
            resolution_due_at=due.resolution_due_at
        )

    def compute_status(
        self,
        item: WorkItem,
        calendar: BusinessCalendar,
        state: SlaState,
        now: datetime
    ) -> str:
        """
        Status of a bound work item at ``now``.

        Breached when an open response clock or the resolution clock is
        past due, or the response came in late. Otherwise at risk when the
        nearer open clock has ``warning_fraction`` or less of its business
        time left. Both the window and what is left of it are measured
        against the bound due dates, so editing the rule later does not
        move an item's status.
        """
        responded = item.has_responded_by(now)

        if not responded and now > state.response_due_at:
            return SlaStatus.BREACHED
        if responded and item.first_response_at > state.response_due_at:
            return SlaStatus.BREACHED
        if now > state.resolution_due_at:
            return SlaStatus.BREACHED

        clocks = [state.resolution_due_at]
        if not responded:
            clocks.append(state.response_due_at)
        due_at = min(clocks)

        total = calendar.elapsed_business_duration(item.created_at, due_at)
        remaining = calendar.elapsed_business_duration(now, due_at)
        if remaining <= total * self.warning_fraction:
            return SlaStatus.AT_RISK
        return SlaStatus.ON_TRACK

    @staticmethod
    def breach_target(item: WorkItem, rule: SlaRule) -> EscalationTarget:
        """
        Who hears about a breach: the assignee when there is one, under
        the role of the rule's first escalation level.
        """
        role = (
            rule.escalation_levels[0].escalate_to_role
            if rule.escalation_levels
            else EscalationRole.TEAM_LEAD
        )
        return EscalationTarget(role=role, user_id=item.assigned_to)
