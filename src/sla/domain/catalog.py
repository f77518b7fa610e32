"""
SLA Rule Catalog
================

Holds the rule set and resolves the rule that applies to a work item.

Reads work against an immutable snapshot and take no lock. Mutations
build a new snapshot under a mutex and swap it in, so a reader never
sees two defaults or a half-applied change.
"""

import threading
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from src.core import (
    NoApplicableRuleError, RuleInactiveError, LastActiveRuleError,
    ResourceNotFoundException
)
from src.sla.domain.entities import SlaRule


def _by_id(rules: Iterable[SlaRule]) -> List[SlaRule]:
    return sorted(rules, key=lambda r: r.id)


class SlaRuleCatalog:
    """
    In-memory rule set with single-default semantics.

    Matching precedence for ``resolve_rule``:
    1. info type + priority + channel
    2. info type + priority, rules without a channel filter first
    3. the active default rule
    """

    def __init__(self, rules: Iterable[SlaRule] = ()):
        self._lock = threading.Lock()
        self._rules: Tuple[SlaRule, ...] = tuple(_by_id(rules))

    # ========== Reads ==========

    @property
    def rules(self) -> Tuple[SlaRule, ...]:
        return self._rules

    def get(self, rule_id: str) -> SlaRule:
        """Get a rule by id, active or not."""
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        raise ResourceNotFoundException("SLA rule", rule_id)

    def active_rules(self) -> List[SlaRule]:
        return [r for r in self._rules if r.is_active]

    def default_rule(self) -> Optional[SlaRule]:
        for rule in self._rules:
            if rule.is_default and rule.is_active:
                return rule
        return None

    def rules_for_info_type(self, info_type: str) -> List[SlaRule]:
        return [r for r in self._rules if r.is_active and r.info_type == info_type]

    def resolve_rule(
        self,
        info_type: str,
        priority: str,
        channel: Optional[str] = None
    ) -> SlaRule:
        """
        Resolve the single rule applying to a work item.

        Raises:
            NoApplicableRuleError: Nothing matches and no active default exists
        """
        rules = self._rules
        candidates = [r for r in rules if r.is_active and r.matches(info_type, priority)]

        if channel is not None:
            for rule in candidates:
                if rule.channel == channel:
                    return rule

        for rule in candidates:
            if rule.channel is None:
                return rule

        if candidates:
            return candidates[0]

        default = next((r for r in rules if r.is_default and r.is_active), None)
        if default is None:
            raise NoApplicableRuleError(info_type, priority, channel)
        return default

    # ========== Mutations ==========

    def set_default(self, rule_id: str) -> SlaRule:
        """
        Make ``rule_id`` the only default rule.

        Raises:
            ResourceNotFoundException: Unknown rule
            RuleInactiveError: Target rule is inactive
        """
        with self._lock:
            target = self.get(rule_id)
            if not target.is_active:
                raise RuleInactiveError(rule_id)

            self._rules = tuple(
                replace(r, is_default=(r.id == rule_id)) if r.is_default != (r.id == rule_id) else r
                for r in self._rules
            )
            return self.get(rule_id)

    def upsert(self, rule: SlaRule) -> SlaRule:
        """
        Add or replace a rule.

        A rule arriving with ``is_default`` set takes the default over.
        """
        with self._lock:
            others = [r for r in self._rules if r.id != rule.id]
            if rule.is_default:
                if not rule.is_active:
                    raise RuleInactiveError(rule.id)
                others = [replace(r, is_default=False) if r.is_default else r for r in others]
            self._rules = tuple(_by_id([*others, rule]))
            return rule

    def remove(self, rule_id: str) -> SlaRule:
        with self._lock:
            rule = self.get(rule_id)
            self._rules = tuple(r for r in self._rules if r.id != rule_id)
            return rule

    def toggle_active(self, rule_id: str) -> SlaRule:
        """
        Flip a rule's active flag.

        Deactivating the default hands the default over to the active
        rule with the lowest id.

        Raises:
            LastActiveRuleError: The rule is the only active one
        """
        with self._lock:
            rule = self.get(rule_id)

            if not rule.is_active:
                updated = replace(rule, is_active=True)
                self._rules = tuple(updated if r.id == rule_id else r for r in self._rules)
                return updated

            others = [r for r in self._rules if r.id != rule_id and r.is_active]
            if rule.is_default and not others:
                raise LastActiveRuleError(rule_id)

            successor = others[0].id if rule.is_default else None
            updated = replace(rule, is_active=False, is_default=False)
            rebuilt = []
            for r in self._rules:
                if r.id == rule_id:
                    rebuilt.append(updated)
                elif r.id == successor:
                    rebuilt.append(replace(r, is_default=True))
                else:
                    rebuilt.append(r)
            self._rules = tuple(rebuilt)
            return updated
