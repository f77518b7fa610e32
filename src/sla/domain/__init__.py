"""
SLA Domain Layer
================

Domain layer for SLA monitoring module.

Contains:
- Entities: Core business objects with identity (SlaRule, WorkItem, SlaState,
  EscalationEvent)
- Value Objects: Immutable objects defined by attributes (BusinessHoursConfig,
  EscalationLevel, DueDates)
- Domain Services: Stateless business logic (BusinessCalendar, DeadlineCalculator,
  EscalationMatcher, SlaEvaluator) and the rule catalog

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.sla.domain.calendar import UTC, BusinessCalendar, as_utc
from src.sla.domain.catalog import SlaRuleCatalog
from src.sla.domain.commands import Escalate, NotifyBreach, PersistState, EvaluationResult
from src.sla.domain.entities import SlaRule, SlaState, WorkItem, EscalationEvent
from src.sla.domain.services import (
    DeadlineCalculator,
    EscalationMatcher,
    SlaEvaluator,
    DEFAULT_WARNING_FRACTION,
)
from src.sla.domain.value_objects import (
    BusinessHoursConfig,
    EscalationLevel,
    EscalationTarget,
    NotificationSettings,
    DueDates,
)

__all__ = [
    # Entities
    "SlaRule",
    "SlaState",
    "WorkItem",
    "EscalationEvent",
    # Value Objects
    "BusinessHoursConfig",
    "EscalationLevel",
    "EscalationTarget",
    "NotificationSettings",
    "DueDates",
    # Commands
    "Escalate",
    "NotifyBreach",
    "PersistState",
    "EvaluationResult",
    # Domain Services
    "BusinessCalendar",
    "SlaRuleCatalog",
    "DeadlineCalculator",
    "EscalationMatcher",
    "SlaEvaluator",
    "DEFAULT_WARNING_FRACTION",
    "as_utc",
    "UTC",
]
