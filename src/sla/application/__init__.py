"""
SLA Application Layer
======================

Application layer for SLA monitoring module.

Contains:
- Services: Evaluation passes, read-only SLA views and rule administration
- Ports: Repository and notification interfaces
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.sla.application.dto import (
    EscalationLevelDTO,
    BusinessHoursDTO,
    NotificationSettingsDTO,
    SlaRuleCreateDTO,
    SlaRuleUpdateDTO,
    CalculateSlaRequest,
    WorkItemCreateDTO,
    WorkItemIngestRequest,
    SlaRuleResponse,
    CalculateSlaResponse,
    RulePerformanceResponse,
    SlaStateResponse,
    EscalationEventResponse,
    WorkItemSLAResponse,
    DashboardSummary,
    DashboardResponse,
    IngestResponse,
    EvaluationSummaryResponse,
)
from src.sla.application.services import (
    SLAEvaluationService,
    SLAQueryService,
    RuleAdminService,
    EvaluationSummary,
    RuleCompliance,
    WorkItemPage,
    IWorkItemRepository,
    ISlaRuleRepository,
    IEscalationRepository,
    INotificationPort,
)

__all__ = [
    # DTOs
    "EscalationLevelDTO",
    "BusinessHoursDTO",
    "NotificationSettingsDTO",
    "SlaRuleCreateDTO",
    "SlaRuleUpdateDTO",
    "CalculateSlaRequest",
    "WorkItemCreateDTO",
    "WorkItemIngestRequest",
    "SlaRuleResponse",
    "CalculateSlaResponse",
    "RulePerformanceResponse",
    "SlaStateResponse",
    "EscalationEventResponse",
    "WorkItemSLAResponse",
    "DashboardSummary",
    "DashboardResponse",
    "IngestResponse",
    "EvaluationSummaryResponse",
    # Services
    "SLAEvaluationService",
    "SLAQueryService",
    "RuleAdminService",
    "EvaluationSummary",
    "RuleCompliance",
    "WorkItemPage",
    # Ports
    "IWorkItemRepository",
    "ISlaRuleRepository",
    "IEscalationRepository",
    "INotificationPort",
]
