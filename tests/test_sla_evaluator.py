"""
Deadlines, escalation matching and the pure evaluator.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from src.config import SlaStatus
from src.core import MalformedRuleWarning
from src.sla.domain import (
    BusinessHoursConfig, DeadlineCalculator, Escalate, EscalationMatcher,
    NotifyBreach, PersistState, SlaEvaluator, SlaState
)
from tests.fakes import make_item, make_rule

IST = ZoneInfo("Asia/Kolkata")
UTC = timezone.utc
T0 = datetime(2024, 3, 11, 0, 0, tzinfo=UTC)

LADDER = ((1, 1, "Team Lead"), (2, 2, "Manager"), (3, 3, "Director"))
STATUS_ORDER = [SlaStatus.ON_TRACK, SlaStatus.AT_RISK, SlaStatus.BREACHED]


@pytest.fixture
def evaluator():
    return SlaEvaluator()


class TestDeadlineCalculator:
    def test_due_dates_on_office_hours(self):
        rule = make_rule(response_hours=4, resolution_hours=18, business_hours=BusinessHoursConfig())

        due = DeadlineCalculator.compute_due_dates(rule, datetime(2024, 3, 15, 16, 0, tzinfo=IST))

        assert due.response_due_at == datetime(2024, 3, 18, 11, 0, tzinfo=IST)
        assert due.resolution_due_at == datetime(2024, 3, 19, 16, 0, tzinfo=IST)
        assert not due.is_malformed

    def test_inverted_rule_is_flagged(self):
        rule = make_rule(response_hours=8, resolution_hours=4)

        assert DeadlineCalculator.compute_due_dates(rule, T0).is_malformed


class TestEscalationMatcher:
    rule = make_rule(levels=LADDER)

    def test_nothing_reached(self):
        assert EscalationMatcher.next_escalation(self.rule, timedelta(minutes=59), 0) is None

    def test_first_level(self):
        assert EscalationMatcher.next_escalation(self.rule, timedelta(hours=1), 0).level == 1

    def test_skipped_levels_are_superseded(self):
        level = EscalationMatcher.next_escalation(self.rule, timedelta(hours=5), 0)
        assert level.level == 3

    def test_fired_levels_do_not_refire(self):
        assert EscalationMatcher.next_escalation(self.rule, timedelta(hours=5), 3) is None

    def test_next_level_after_fired(self):
        assert EscalationMatcher.next_escalation(self.rule, timedelta(hours=2), 1).level == 2


class TestFridayAfternoonScenario:
    """4h response on Mon-Fri 09:00-18:00 IST, created Friday 16:00."""

    rule = make_rule(response_hours=4, resolution_hours=24, business_hours=BusinessHoursConfig())
    item = make_item(created_at=datetime(2024, 3, 15, 16, 0, tzinfo=IST))

    def status_at(self, evaluator, local: datetime) -> str:
        return evaluator.evaluate(self.item, self.rule, None, local).state.current_status

    def test_response_due_monday_eleven(self, evaluator):
        state = evaluator.evaluate(self.item, self.rule, None, datetime(2024, 3, 18, 9, 30, tzinfo=IST)).state
        assert state.response_due_at == datetime(2024, 3, 18, 11, 0, tzinfo=IST)

    def test_on_track_monday_morning(self, evaluator):
        # 2.5h elapsed, 1.5h left of 4h
        assert self.status_at(evaluator, datetime(2024, 3, 18, 9, 30, tzinfo=IST)) == SlaStatus.ON_TRACK

    def test_at_risk_with_quarter_left(self, evaluator):
        assert self.status_at(evaluator, datetime(2024, 3, 18, 10, 0, tzinfo=IST)) == SlaStatus.AT_RISK

    def test_at_risk_exactly_at_due(self, evaluator):
        assert self.status_at(evaluator, datetime(2024, 3, 18, 11, 0, tzinfo=IST)) == SlaStatus.AT_RISK

    def test_breached_after_due(self, evaluator):
        assert self.status_at(evaluator, datetime(2024, 3, 18, 11, 1, tzinfo=IST)) == SlaStatus.BREACHED

    def test_weekend_does_not_consume_time(self, evaluator):
        assert self.status_at(evaluator, datetime(2024, 3, 17, 23, 0, tzinfo=IST)) == SlaStatus.ON_TRACK


class TestSlaEvaluator:
    def test_first_evaluation_binds_rule(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24)
        item = make_item(created_at=T0)

        result = evaluator.evaluate(item, rule, None, T0 + timedelta(minutes=30))

        assert result.state.rule_id == rule.id
        assert result.state.response_due_at == T0 + timedelta(hours=4)
        assert result.state.resolution_due_at == T0 + timedelta(hours=24)
        assert result.state.current_status == SlaStatus.ON_TRACK
        assert [type(c) for c in result.commands] == [PersistState]
        assert result.persist[0].expected_version == 0

    def test_response_in_time_leaves_resolution_clock(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24)
        item = make_item(created_at=T0, first_response_at=T0 + timedelta(hours=1))

        assert evaluator.evaluate(item, rule, None, T0 + timedelta(hours=10)).state.current_status == SlaStatus.ON_TRACK
        assert evaluator.evaluate(item, rule, None, T0 + timedelta(hours=19)).state.current_status == SlaStatus.AT_RISK

    def test_unanswered_past_response_due(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24)
        item = make_item(created_at=T0)

        assert evaluator.evaluate(item, rule, None, T0 + timedelta(hours=10)).state.current_status == SlaStatus.BREACHED

    def test_late_response_is_breach(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24)
        item = make_item(created_at=T0, first_response_at=T0 + timedelta(hours=5))

        assert evaluator.evaluate(item, rule, None, T0 + timedelta(hours=6)).state.current_status == SlaStatus.BREACHED

    def test_breach_is_sticky(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24)
        item = make_item(created_at=T0)
        state = SlaState(
            rule_id=rule.id,
            response_due_at=T0 + timedelta(hours=4),
            resolution_due_at=T0 + timedelta(hours=24),
            current_status=SlaStatus.BREACHED,
            version=3
        )

        result = evaluator.evaluate(item, rule, state, T0 + timedelta(minutes=10))

        assert result.state.current_status == SlaStatus.BREACHED

    def test_escalation_fires_once(self, evaluator):
        rule = make_rule(levels=LADDER)
        item = make_item(created_at=T0)
        now = T0 + timedelta(hours=1, minutes=5)

        first = evaluator.evaluate(item, rule, None, now)
        second = evaluator.evaluate(item, rule, first.state, now)

        assert [c.level for c in first.escalations] == [1]
        assert first.state.highest_escalation_fired == 1
        assert first.state.escalated_to == "Team Lead"
        assert first.state.escalated_at == now
        assert second.escalations == []
        assert second.state.highest_escalation_fired == 1
        assert second.state == first.state

    def test_skip_level_emits_single_escalation(self, evaluator):
        rule = make_rule(levels=LADDER)
        item = make_item(created_at=T0)

        result = evaluator.evaluate(item, rule, None, T0 + timedelta(hours=3, minutes=30))

        assert len(result.escalations) == 1
        assert result.escalations[0].level == 3
        assert result.state.escalated_to == "Director"

    def test_escalation_uses_rule_channels_by_default(self, evaluator):
        rule = make_rule(levels=LADDER)
        command = evaluator.evaluate(make_item(created_at=T0), rule, None, T0 + timedelta(hours=1)).escalations[0]

        assert isinstance(command, Escalate)
        assert command.channels == ("Email", "In-App")
        assert command.notify

    def test_notify_switch_is_carried(self, evaluator):
        rule = make_rule(levels=LADDER, notify=False)
        command = evaluator.evaluate(make_item(created_at=T0), rule, None, T0 + timedelta(hours=1)).escalations[0]

        assert not command.notify

    def test_status_never_regresses(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24, levels=LADDER)
        item = make_item(created_at=T0)

        state = None
        ranks = []
        for minutes in range(0, 30 * 60, 20):
            state = evaluator.evaluate(item, rule, state, T0 + timedelta(minutes=minutes)).state
            ranks.append(STATUS_ORDER.index(state.current_status))

        assert ranks == sorted(ranks)
        assert state.current_status == SlaStatus.BREACHED

    def test_terminal_item_is_frozen(self, evaluator):
        rule = make_rule(levels=LADDER)
        state = SlaState(rule_id=rule.id, current_status=SlaStatus.AT_RISK, version=2)
        item = make_item(created_at=T0, status_category="Resolved", sla_state=state)

        result = evaluator.evaluate(item, rule, None, T0 + timedelta(days=5))

        assert result.state is state
        assert result.commands == []

    def test_cancelled_item_is_frozen(self, evaluator):
        item = make_item(created_at=T0, status_category="Cancelled")

        assert evaluator.evaluate(item, make_rule(), None, T0 + timedelta(days=5)).commands == []

    def test_malformed_rule_warns_and_proceeds(self, evaluator):
        rule = make_rule(response_hours=8, resolution_hours=4)

        with pytest.warns(MalformedRuleWarning):
            result = evaluator.evaluate(make_item(created_at=T0), rule, None, T0 + timedelta(hours=1))

        assert result.state.resolution_due_at < result.state.response_due_at
        assert result.persist

    def test_bound_rule_mismatch_rejected(self, evaluator):
        rule = make_rule()
        state = SlaState(rule_id="SLA-OTHER", response_due_at=T0, resolution_due_at=T0)

        with pytest.raises(ValueError):
            evaluator.evaluate(make_item(created_at=T0), rule, state, T0)

    def test_expected_version_is_read_version(self, evaluator):
        rule = make_rule()
        first = evaluator.evaluate(make_item(created_at=T0), rule, None, T0)

        second = evaluator.evaluate(make_item(created_at=T0), rule, replace(first.state, version=7), T0)

        assert second.persist[0].expected_version == 7

    @pytest.mark.parametrize("fraction", [0, 1, 1.5])
    def test_warning_fraction_bounds(self, fraction):
        with pytest.raises(ValueError):
            SlaEvaluator(fraction)


class TestBoundDeadlines:
    def test_shorter_rule_after_binding_keeps_status(self, evaluator):
        rule = make_rule(response_hours=8, resolution_hours=24)
        item = make_item(created_at=T0)
        bound = evaluator.evaluate(item, rule, None, T0 + timedelta(hours=1)).state

        edited = replace(rule, response_time=timedelta(hours=2))
        result = evaluator.evaluate(item, edited, bound, T0 + timedelta(hours=2))

        assert result.state.response_due_at == T0 + timedelta(hours=8)
        assert result.state.current_status == SlaStatus.ON_TRACK

    def test_longer_rule_after_binding_keeps_status(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=48)
        item = make_item(created_at=T0)
        bound = evaluator.evaluate(item, rule, None, T0 + timedelta(hours=3, minutes=30)).state
        assert bound.current_status == SlaStatus.AT_RISK

        edited = replace(rule, response_time=timedelta(hours=40))

        at_risk = evaluator.evaluate(item, edited, bound, T0 + timedelta(hours=3, minutes=40))
        late = evaluator.evaluate(item, edited, at_risk.state, T0 + timedelta(hours=4, minutes=5))

        assert at_risk.state.current_status == SlaStatus.AT_RISK
        assert late.state.current_status == SlaStatus.BREACHED
        assert late.state.response_due_at == T0 + timedelta(hours=4)

    def test_business_hours_window_measured_on_bound_dates(self, evaluator):
        office = BusinessHoursConfig(timezone="Asia/Kolkata")
        rule = make_rule(response_hours=4, resolution_hours=40, business_hours=office)
        item = make_item(created_at=datetime(2024, 3, 15, 16, 0, tzinfo=IST))
        bound = evaluator.evaluate(item, rule, None, datetime(2024, 3, 15, 16, 30, tzinfo=IST)).state

        edited = replace(rule, response_time=timedelta(hours=1))
        result = evaluator.evaluate(item, edited, bound, datetime(2024, 3, 18, 9, 30, tzinfo=IST))

        assert result.state.current_status == SlaStatus.ON_TRACK


class TestBreachNotice:
    def test_first_breach_emits_notice(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24, levels=LADDER, notify_breach=True)
        item = make_item(created_at=T0, assigned_to="asha")

        result = evaluator.evaluate(item, rule, None, T0 + timedelta(hours=5))

        [notice] = result.breach_notices
        assert isinstance(notice, NotifyBreach)
        assert notice.target.recipient == "asha"
        assert notice.target.role == "Team Lead"
        assert notice.channels == ("Email", "In-App")

    def test_notice_fires_only_on_transition(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24, notify_breach=True)
        item = make_item(created_at=T0)

        first = evaluator.evaluate(item, rule, None, T0 + timedelta(hours=5))
        second = evaluator.evaluate(item, rule, first.state, T0 + timedelta(hours=6))

        assert len(first.breach_notices) == 1
        assert second.breach_notices == []

    def test_no_notice_before_breach(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24, notify_breach=True)

        result = evaluator.evaluate(make_item(created_at=T0), rule, None, T0 + timedelta(hours=3, minutes=30))

        assert result.state.current_status == SlaStatus.AT_RISK
        assert result.breach_notices == []

    def test_switched_off(self, evaluator):
        rule = make_rule(response_hours=4, resolution_hours=24, notify_breach=False)

        result = evaluator.evaluate(make_item(created_at=T0), rule, None, T0 + timedelta(hours=5))

        assert result.state.current_status == SlaStatus.BREACHED
        assert result.breach_notices == []

    def test_without_ladder_or_assignee_goes_to_team_lead(self):
        rule = make_rule(notify_breach=True)

        target = SlaEvaluator.breach_target(make_item(created_at=T0), rule)

        assert target.recipient == "Team Lead"
