"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime, time, timedelta

from src.sla.domain import (
    BusinessHoursConfig, EscalationLevel, NotificationSettings, SlaRule, WorkItem,
    as_utc
)


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["Low", "Medium", "High", "Critical"]
InfoTypeStr = Literal[
    "Brochure", "Policy", "Invoice Copy", "Catalog", "Technical Specification",
    "Pricing", "Documentation", "Warranty", "Service", "General Inquiry", "Other"
]
ChannelStr = Literal["Website", "Email", "WhatsApp", "Internal", "Phone", "Chat"]
StatusCategoryStr = Literal["Open", "In Progress", "Pending", "Resolved", "Closed", "Cancelled"]
SlaStatusStr = Literal["on_track", "at_risk", "breached"]
EscalationRoleStr = Literal["Team Lead", "Manager", "Senior Manager", "Director", "Admin"]
NotificationChannelStr = Literal["Email", "SMS", "WhatsApp", "In-App", "Slack"]
WeekdayStr = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600, 4)


# ========== Rule Request DTOs ==========

class EscalationLevelDTO(BaseModel):
    """One escalation level as entered in the admin UI."""
    level: int = Field(..., ge=1, le=5, description="Escalation level")
    escalation_time_hours: float = Field(..., ge=0.5, description="Business hours after creation")
    escalate_to_role: EscalationRoleStr
    escalate_to_team: Optional[str] = None
    escalate_to_user: Optional[str] = None
    channels: List[NotificationChannelStr] = Field(default_factory=list)

    def to_domain(self) -> EscalationLevel:
        return EscalationLevel(
            level=self.level,
            escalate_after=timedelta(hours=self.escalation_time_hours),
            escalate_to_role=self.escalate_to_role,
            escalate_to_team=self.escalate_to_team,
            escalate_to_user=self.escalate_to_user,
            channels=tuple(self.channels)
        )


class BusinessHoursDTO(BaseModel):
    """Working schedule for a rule."""
    enabled: bool = True
    timezone: str = "Asia/Kolkata"
    working_days: List[WeekdayStr] = Field(
        default_factory=lambda: ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
    )
    start_time: time = Field(default=time(9, 0), description="HH:MM")
    end_time: time = Field(default=time(18, 0), description="HH:MM")

    def to_domain(self) -> BusinessHoursConfig:
        return BusinessHoursConfig(
            enabled=self.enabled,
            timezone=self.timezone,
            working_days=tuple(self.working_days),
            start_time=self.start_time,
            end_time=self.end_time
        )


class NotificationSettingsDTO(BaseModel):
    """Escalation and breach notice switches."""
    notify_on_escalation: bool = True
    notify_on_sla_breach: bool = True
    channels: List[NotificationChannelStr] = Field(default_factory=lambda: ["Email", "In-App"])

    def to_domain(self) -> NotificationSettings:
        return NotificationSettings(
            notify_on_escalation=self.notify_on_escalation,
            notify_on_sla_breach=self.notify_on_sla_breach,
            channels=tuple(self.channels)
        )


class SlaRuleCreateDTO(BaseModel):
    """DTO for creating an SLA rule."""
    rule_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    info_type: InfoTypeStr
    priority: PriorityStr
    request_channel: Optional[ChannelStr] = None
    response_time_hours: float = Field(..., ge=0.5, le=720)
    resolution_time_hours: float = Field(..., ge=1, le=2160)
    escalation_levels: List[EscalationLevelDTO] = Field(default_factory=list)
    business_hours: BusinessHoursDTO = Field(default_factory=BusinessHoursDTO)
    notification_settings: NotificationSettingsDTO = Field(default_factory=NotificationSettingsDTO)
    is_active: bool = True
    is_default: bool = False

    @field_validator("escalation_levels")
    @classmethod
    def validate_levels(cls, v: List[EscalationLevelDTO]) -> List[EscalationLevelDTO]:
        """Levels must strictly increase in both level and time."""
        for previous, current in zip(v, v[1:]):
            if current.level <= previous.level:
                raise ValueError("escalation levels must be strictly increasing")
            if current.escalation_time_hours <= previous.escalation_time_hours:
                raise ValueError("escalation times must be strictly increasing")
        return v

    def to_domain(self, rule_id: str = "") -> SlaRule:
        """Build the domain rule; an empty id is assigned on create."""
        return SlaRule(
            id=rule_id,
            name=self.rule_name,
            description=self.description,
            info_type=self.info_type,
            priority=self.priority,
            channel=self.request_channel,
            response_time=timedelta(hours=self.response_time_hours),
            resolution_time=timedelta(hours=self.resolution_time_hours),
            escalation_levels=[level.to_domain() for level in self.escalation_levels],
            business_hours=self.business_hours.to_domain(),
            notification_settings=self.notification_settings.to_domain(),
            is_active=self.is_active,
            is_default=self.is_default
        )


class SlaRuleUpdateDTO(BaseModel):
    """DTO for updating an SLA rule. Omitted fields stay unchanged."""
    rule_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    info_type: Optional[InfoTypeStr] = None
    priority: Optional[PriorityStr] = None
    request_channel: Optional[ChannelStr] = None
    response_time_hours: Optional[float] = Field(None, ge=0.5, le=720)
    resolution_time_hours: Optional[float] = Field(None, ge=1, le=2160)
    escalation_levels: Optional[List[EscalationLevelDTO]] = None
    business_hours: Optional[BusinessHoursDTO] = None
    notification_settings: Optional[NotificationSettingsDTO] = None

    def to_changes(self) -> dict:
        """Domain field changes for the fields that were sent."""
        sent = self.model_fields_set
        changes = {}
        if "rule_name" in sent:
            changes["name"] = self.rule_name
        if "description" in sent:
            changes["description"] = self.description
        if "info_type" in sent:
            changes["info_type"] = self.info_type
        if "priority" in sent:
            changes["priority"] = self.priority
        if "request_channel" in sent:
            changes["channel"] = self.request_channel
        if self.response_time_hours is not None:
            changes["response_time"] = timedelta(hours=self.response_time_hours)
        if self.resolution_time_hours is not None:
            changes["resolution_time"] = timedelta(hours=self.resolution_time_hours)
        if self.escalation_levels is not None:
            changes["escalation_levels"] = [level.to_domain() for level in self.escalation_levels]
        if self.business_hours is not None:
            changes["business_hours"] = self.business_hours.to_domain()
        if self.notification_settings is not None:
            changes["notification_settings"] = self.notification_settings.to_domain()
        return changes


class CalculateSlaRequest(BaseModel):
    """Preview deadlines for a prospective work item."""
    info_type: InfoTypeStr
    priority: PriorityStr
    request_channel: Optional[ChannelStr] = None
    created_at: Optional[datetime] = None


# ========== Work Item Request DTOs ==========

class WorkItemCreateDTO(BaseModel):
    """DTO for ingesting a single work item."""
    id: str = Field(..., min_length=1, description="CRM work item ID")
    priority: PriorityStr
    info_type: InfoTypeStr
    request_channel: Optional[ChannelStr] = None
    status_category: StatusCategoryStr = "Open"
    assigned_to: Optional[str] = None
    created_at: datetime
    first_response_at: Optional[datetime] = None

    @field_validator("first_response_at")
    @classmethod
    def validate_first_response(cls, v: Optional[datetime], info) -> Optional[datetime]:
        """Ensure first_response_at is not before created_at."""
        created_at = info.data.get("created_at")
        if v is not None and created_at is not None and as_utc(v) < as_utc(created_at):
            raise ValueError("first_response_at cannot be before created_at")
        return v

    def to_domain(self, item_id: str) -> WorkItem:
        return WorkItem(
            id=item_id,
            external_id=self.id,
            created_at=self.created_at,
            priority=self.priority,
            info_type=self.info_type,
            status_category=self.status_category,
            channel=self.request_channel,
            assigned_to=self.assigned_to,
            first_response_at=self.first_response_at
        )


class WorkItemIngestRequest(BaseModel):
    """Request model for work item ingestion."""
    items: List[WorkItemCreateDTO] = Field(..., description="Work items to ingest")


# ========== Response DTOs ==========

class EscalationLevelResponse(BaseModel):
    level: int
    escalation_time_hours: float
    escalate_to_role: str
    escalate_to_team: Optional[str] = None
    escalate_to_user: Optional[str] = None
    channels: List[str] = Field(default_factory=list)


class SlaRuleResponse(BaseModel):
    """Response model for an SLA rule."""
    rule_id: str
    rule_name: str
    description: Optional[str] = None
    info_type: str
    priority: str
    request_channel: Optional[str] = None
    response_time_hours: float
    resolution_time_hours: float
    escalation_levels: List[EscalationLevelResponse] = Field(default_factory=list)
    business_hours: BusinessHoursDTO
    notification_settings: NotificationSettingsDTO
    is_active: bool
    is_default: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule) -> "SlaRuleResponse":
        hours = rule.business_hours
        return cls(
            rule_id=rule.id,
            rule_name=rule.name,
            description=rule.description,
            info_type=rule.info_type,
            priority=rule.priority,
            request_channel=rule.channel,
            response_time_hours=_hours(rule.response_time),
            resolution_time_hours=_hours(rule.resolution_time),
            escalation_levels=[
                EscalationLevelResponse(
                    level=level.level,
                    escalation_time_hours=_hours(level.escalate_after),
                    escalate_to_role=level.escalate_to_role,
                    escalate_to_team=level.escalate_to_team,
                    escalate_to_user=level.escalate_to_user,
                    channels=list(level.channels)
                )
                for level in rule.escalation_levels
            ],
            business_hours=BusinessHoursDTO(
                enabled=hours.enabled,
                timezone=hours.timezone,
                working_days=list(hours.working_days),
                start_time=hours.start_time,
                end_time=hours.end_time
            ),
            notification_settings=NotificationSettingsDTO(
                notify_on_escalation=rule.notification_settings.notify_on_escalation,
                notify_on_sla_breach=rule.notification_settings.notify_on_sla_breach,
                channels=list(rule.notification_settings.channels)
            ),
            is_active=rule.is_active,
            is_default=rule.is_default,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )


class CalculateSlaResponse(BaseModel):
    """Deadlines a work item would get."""
    rule_id: str
    rule_name: str
    response_due_at: datetime
    resolution_due_at: datetime
    is_malformed: bool = False


class RulePerformanceResponse(BaseModel):
    """Compliance of one rule over a period."""
    rule_id: str
    rule_name: Optional[str] = None
    total_requests: int
    within_sla: int
    breached_sla: int
    sla_compliance_percentage: float
    avg_response_time_hours: Optional[float] = None


class SlaStateResponse(BaseModel):
    """SLA annotation of a work item."""
    rule_id: Optional[str] = None
    response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    current_status: Optional[SlaStatusStr] = None
    highest_escalation_fired: int = 0
    escalated_at: Optional[datetime] = None
    escalated_to: Optional[str] = None


class EscalationEventResponse(BaseModel):
    """A fired escalation level or breach notice (level 0)."""
    id: str
    item_id: str
    kind: str = "escalation"
    level: int
    escalated_to: str
    channels: List[str] = Field(default_factory=list)
    fired_at: datetime
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None


class WorkItemSLAResponse(BaseModel):
    """Response model for a work item's SLA information."""
    item_id: str
    external_id: str
    priority: str
    info_type: str
    request_channel: Optional[str] = None
    status_category: str
    assigned_to: Optional[str] = None
    created_at: datetime
    first_response_at: Optional[datetime] = None
    is_frozen: bool = False
    sla: SlaStateResponse
    escalations: List[EscalationEventResponse] = Field(default_factory=list)


class DashboardSummary(BaseModel):
    """Summary statistics for dashboard."""
    total_items: int
    on_track_count: int
    at_risk_count: int
    breached_count: int
    unevaluated_count: int
    breach_rate: float = Field(..., description="Percentage of evaluated items breached")


class DashboardResponse(BaseModel):
    """Response model for dashboard."""
    items: List[WorkItemSLAResponse]
    total_count: int
    summary: DashboardSummary


class IngestResponse(BaseModel):
    """Response model for work item ingestion."""
    created: int = Field(..., description="Number of new work items created")
    updated: int = Field(..., description="Number of existing work items updated")
    failed: int = Field(default=0, description="Number of failed ingestions")
    errors: List[str] = Field(default_factory=list, description="Error messages")


class EvaluationSummaryResponse(BaseModel):
    """Outcome of a batch evaluation pass."""
    evaluated: int
    on_track: int
    at_risk: int
    breached: int
    frozen: int
    unresolved: int
    escalations_fired: int
    breach_notices: int = 0
    notifications_sent: int
    notifications_failed: int
    notices_redelivered: int = 0
    conflicts: int
    errors: int
    cancelled: bool
    duration_ms: float
