"""
SQLAlchemy adapters against a real SQLite database.
"""

import re
from dataclasses import replace
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from src.config import SlaStatus
from src.core import ConfigurationException, RepositoryException
from src.sla.domain import BusinessHoursConfig, EscalationEvent, SlaState
from src.sla.infrastructure import (
    SQLAlchemyEscalationRepository, SQLAlchemySlaRuleRepository,
    SQLAlchemyWorkItemRepository, YAMLRuleSeedLoader
)
from tests.fakes import make_item, make_rule

UTC = timezone.utc
T0 = datetime(2024, 3, 11, 9, 0, tzinfo=UTC)
SEED_FILE = Path(__file__).resolve().parent.parent / "sla_rules.yaml"


@pytest.fixture
def rule_repo(session):
    return SQLAlchemySlaRuleRepository(session)


@pytest.fixture
def item_repo(session):
    return SQLAlchemyWorkItemRepository(session)


@pytest.fixture
def escalation_repo(session):
    return SQLAlchemyEscalationRepository(session)


async def add_item(item_repo, **kwargs):
    item = make_item(item_id=str(uuid4()), **kwargs)
    await item_repo.upsert(item)
    return item


class TestRuleRepository:
    async def test_ids_are_numbered_per_day(self, rule_repo):
        first = await rule_repo.create(make_rule(""))
        second = await rule_repo.create(make_rule("", "Pricing", "Low"))

        assert re.fullmatch(r"SLA-\d{8}-0001", first.id)
        assert second.id == first.id[:-4] + "0002"

    async def test_duplicate_id_rejected(self, rule_repo):
        await rule_repo.create(make_rule("SLA-FIXED-0001"))

        with pytest.raises(RepositoryException):
            await rule_repo.create(make_rule("SLA-FIXED-0001"))

    async def test_nested_settings_survive_storage(self, rule_repo):
        hours = BusinessHoursConfig(
            timezone="Europe/Berlin",
            working_days=("Monday", "Wednesday"),
            start_time=time(8, 30),
            end_time=time(16, 0)
        )
        rule = make_rule(
            "",
            channel="Email",
            response_hours=1.5,
            levels=((1, 2, "Team Lead"), (2, 6.5, "Director")),
            business_hours=hours,
            notify_breach=True
        )

        stored = await rule_repo.get((await rule_repo.create(rule)).id)

        assert stored.channel == "Email"
        assert stored.response_time == timedelta(hours=1.5)
        assert stored.business_hours == hours
        assert [lvl.escalate_after for lvl in stored.escalation_levels] == [
            timedelta(hours=2), timedelta(hours=6.5)
        ]
        assert stored.escalation_levels[1].escalate_to_role == "Director"
        assert stored.notification_settings.notify_on_sla_breach
        assert stored.created_at.tzinfo is not None

    async def test_set_default_is_exclusive(self, rule_repo):
        first = await rule_repo.create(make_rule("SLA-A", is_default=True))
        second = await rule_repo.create(make_rule("SLA-B"))

        await rule_repo.set_default(second.id)

        rules = {r.id: r for r in await rule_repo.list_all()}
        assert [r.id for r in rules.values() if r.is_default] == [second.id]
        assert not rules[first.id].is_default

    async def test_set_default_unknown_rule(self, rule_repo):
        with pytest.raises(RepositoryException):
            await rule_repo.set_default("SLA-NOPE")

    async def test_update_and_delete(self, rule_repo):
        rule = await rule_repo.create(make_rule(""))

        updated = await rule_repo.update(replace(rule, name="Renamed", is_active=False))
        assert updated.name == "Renamed"
        assert not updated.is_active

        await rule_repo.delete(rule.id)
        assert await rule_repo.get(rule.id) is None

    async def test_count_usage(self, rule_repo, item_repo):
        rule = await rule_repo.create(make_rule(""))
        item = await add_item(item_repo, created_at=T0)
        await item_repo.compare_and_swap_sla_state(item.id, 0, SlaState(rule_id=rule.id))

        assert await rule_repo.count_usage(rule.id) == 1


class TestWorkItemRepository:
    async def test_upsert_reports_creation(self, item_repo):
        item = make_item(item_id=str(uuid4()), created_at=T0)

        assert await item_repo.upsert(item) is True
        assert await item_repo.upsert(replace(item, status_category="Pending")) is False

        stored = await item_repo.get_by_external_id(item.external_id)
        assert stored.status_category == "Pending"
        assert stored.created_at == T0

    async def test_compare_and_swap(self, item_repo):
        item = await add_item(item_repo, created_at=T0)
        state = SlaState(
            rule_id="SLA-A",
            response_due_at=T0 + timedelta(hours=4),
            resolution_due_at=T0 + timedelta(hours=24),
            current_status=SlaStatus.ON_TRACK
        )

        assert await item_repo.compare_and_swap_sla_state(item.id, 0, state)
        assert not await item_repo.compare_and_swap_sla_state(item.id, 0, state)

        stored = await item_repo.read_sla_state(item.id)
        assert stored.version == 1
        assert stored.rule_id == "SLA-A"
        assert stored.response_due_at == T0 + timedelta(hours=4)
        assert stored.response_due_at.utcoffset() == timedelta(0)

    async def test_upsert_keeps_sla_state(self, item_repo):
        item = await add_item(item_repo, created_at=T0)
        await item_repo.compare_and_swap_sla_state(
            item.id, 0, SlaState(rule_id="SLA-A", current_status=SlaStatus.AT_RISK)
        )

        await item_repo.upsert(replace(item, assigned_to="agent-7"))

        stored = await item_repo.get(item.id)
        assert stored.assigned_to == "agent-7"
        assert stored.sla_state.current_status == SlaStatus.AT_RISK
        assert stored.sla_state.version == 1

    async def test_cas_on_unknown_item(self, item_repo):
        assert not await item_repo.compare_and_swap_sla_state("not-a-uuid", 0, SlaState())
        assert not await item_repo.compare_and_swap_sla_state(str(uuid4()), 0, SlaState())

    async def test_open_items_are_paged_by_id(self, item_repo):
        open_items = [await add_item(item_repo, created_at=T0) for _ in range(5)]
        await add_item(item_repo, created_at=T0, status_category="Resolved")
        await add_item(item_repo, created_at=T0, status_category="Cancelled")

        seen = []
        cursor = None
        while True:
            page = await item_repo.list_open_work_items(cursor, 2)
            seen.extend(i.id for i in page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        assert sorted(seen) == sorted(i.id for i in open_items)
        assert len(seen) == 5

    async def test_invalid_cursor(self, item_repo):
        with pytest.raises(RepositoryException):
            await item_repo.list_open_work_items("bogus", 10)

    async def test_list_filters(self, item_repo):
        await add_item(item_repo, created_at=T0, priority="Critical")
        await add_item(item_repo, created_at=T0, priority="Low", status_category="Closed")

        critical = await item_repo.list({"priority": "Critical"})
        closed = await item_repo.list({"status_category": ["Closed", "Resolved"]})

        assert [i.priority for i in critical] == ["Critical"]
        assert [i.status_category for i in closed] == ["Closed"]

    async def test_list_evaluated(self, item_repo):
        bound = await add_item(item_repo, created_at=T0)
        await add_item(item_repo, created_at=T0)
        await item_repo.compare_and_swap_sla_state(bound.id, 0, SlaState(rule_id="SLA-A"))

        items = await item_repo.list_evaluated(created_from=T0 - timedelta(days=1))

        assert [i.id for i in items] == [bound.id]

    async def test_discard_drops_pending_write(self, item_repo):
        item = await add_item(item_repo, created_at=T0)
        await item_repo.checkpoint()

        await item_repo.compare_and_swap_sla_state(item.id, 0, SlaState(rule_id="SLA-A"))
        await item_repo.discard()

        assert (await item_repo.read_sla_state(item.id)).is_unevaluated


class TestEscalationRepository:
    async def test_record_and_dispatch(self, item_repo, escalation_repo):
        item = await add_item(item_repo, created_at=T0)
        event = await escalation_repo.record(EscalationEvent(
            id=None,
            item_id=item.id,
            level=1,
            escalated_to="Team Lead",
            role="Team Lead",
            fired_at=T0 + timedelta(hours=1),
            channels=["Email"]
        ))

        await escalation_repo.mark_dispatched(event.id, T0 + timedelta(hours=1, seconds=5))

        [stored] = await escalation_repo.list_for_item(item.id)
        assert stored.id == event.id
        assert stored.channels == ["Email"]
        assert stored.notification_sent
        assert stored.notification_sent_at == T0 + timedelta(hours=1, seconds=5)

    async def test_mark_unknown_event(self, escalation_repo):
        with pytest.raises(RepositoryException):
            await escalation_repo.mark_dispatched(str(uuid4()), T0)

    async def test_history_is_oldest_first(self, item_repo, escalation_repo):
        item = await add_item(item_repo, created_at=T0)
        for level, hours in ((2, 3), (1, 1)):
            await escalation_repo.record(EscalationEvent(
                id=None, item_id=item.id, level=level, escalated_to="x",
                role="Manager", fired_at=T0 + timedelta(hours=hours)
            ))

        assert [e.level for e in await escalation_repo.list_for_item(item.id)] == [1, 2]

    async def test_pending_notices(self, item_repo, escalation_repo):
        item = await add_item(item_repo, created_at=T0)
        sent, pending, _, breach = [
            await escalation_repo.record(EscalationEvent(
                id=None, item_id=item.id, level=level, escalated_to="x",
                role="Manager", fired_at=T0 + timedelta(hours=hours),
                kind=kind, notification_required=required
            ))
            for level, hours, kind, required in (
                (1, 1, "escalation", True),
                (2, 2, "escalation", True),
                (3, 3, "escalation", False),
                (0, 4, "breach", True),
            )
        ]
        await escalation_repo.mark_dispatched(sent.id, T0 + timedelta(hours=1))

        result = await escalation_repo.list_pending(limit=10)

        assert [e.id for e in result] == [pending.id, breach.id]
        assert result[1].kind == "breach"
        assert await escalation_repo.list_pending(limit=1) == [result[0]]


class TestRuleSeed:
    async def test_shipped_seed_file(self, rule_repo):
        created = await YAMLRuleSeedLoader(SEED_FILE).seed(rule_repo)

        rules = await rule_repo.list_all()
        assert created == len(rules) > 0
        assert [r.id for r in rules if r.is_default] == ["SLA-DEFAULT-0001"]

    async def test_seed_only_into_empty_table(self, rule_repo):
        await rule_repo.create(make_rule(""))

        assert await YAMLRuleSeedLoader(SEED_FILE).seed(rule_repo) == 0

    async def test_missing_file_seeds_nothing(self, rule_repo, tmp_path):
        assert await YAMLRuleSeedLoader(tmp_path / "absent.yaml").seed(rule_repo) == 0

    def test_invalid_entry(self, tmp_path):
        seed = tmp_path / "rules.yaml"
        seed.write_text(
            "rules:\n"
            "  - rule_name: Broken\n"
            "    info_type: Brochure\n"
            "    priority: Urgent\n"
            "    response_time_hours: 4\n"
            "    resolution_time_hours: 24\n"
        )

        with pytest.raises(ConfigurationException):
            YAMLRuleSeedLoader(seed).load()
