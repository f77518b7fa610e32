"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA monitoring:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and YAML rule seed
- External: External service integrations (Slack, scheduler)
"""

from src.sla.infrastructure.models import SlaRuleModel, WorkItemModel, EscalationEventModel
from src.sla.infrastructure.repositories import (
    SQLAlchemySlaRuleRepository,
    SQLAlchemyWorkItemRepository,
    SQLAlchemyEscalationRepository,
    YAMLRuleSeedLoader
)
from src.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    SlackNotifier,
    SLAScheduler
)

__all__ = [
    "SlaRuleModel",
    "WorkItemModel",
    "EscalationEventModel",
    "SQLAlchemySlaRuleRepository",
    "SQLAlchemyWorkItemRepository",
    "SQLAlchemyEscalationRepository",
    "YAMLRuleSeedLoader",
    "CircuitBreaker",
    "CircuitState",
    "SlackNotifier",
    "SLAScheduler",
]
