"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/crm_sla",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_warning_fraction: float = Field(
        default=0.25,
        description="Remaining fraction of a clock at or below which an item is at risk",
        gt=0.0,
        lt=1.0
    )
    sla_evaluation_interval: int = Field(
        default=60,
        description="Seconds between SLA evaluation passes (0 disables the scheduler)",
        ge=0
    )
    sla_page_size: int = Field(
        default=100,
        description="Work items fetched per page during a batch pass",
        ge=1,
        le=5000
    )
    sla_rules_seed_path: Path = Field(
        default=Path("sla_rules.yaml"),
        description="YAML file used to seed the rule table when it is empty"
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#sla-escalations",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    slack_max_retries: int = Field(
        default=3,
        description="Delivery attempts per notification before giving up",
        ge=1,
        le=10
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(str):
    """Work item priority tiers."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class InfoType(str):
    """Info request types an SLA rule can apply to."""
    BROCHURE = "Brochure"
    POLICY = "Policy"
    INVOICE_COPY = "Invoice Copy"
    CATALOG = "Catalog"
    TECHNICAL_SPECIFICATION = "Technical Specification"
    PRICING = "Pricing"
    DOCUMENTATION = "Documentation"
    WARRANTY = "Warranty"
    SERVICE = "Service"
    GENERAL_INQUIRY = "General Inquiry"
    OTHER = "Other"


class RequestChannel(str):
    """Channels a work item can arrive through."""
    WEBSITE = "Website"
    EMAIL = "Email"
    WHATSAPP = "WhatsApp"
    INTERNAL = "Internal"
    PHONE = "Phone"
    CHAT = "Chat"


class StatusCategory(str):
    """Work item status categories."""
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    PENDING = "Pending"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"


class SlaStatus(str):
    """Computed SLA status of an open work item."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class EscalationRole(str):
    """Roles an escalation level can target."""
    TEAM_LEAD = "Team Lead"
    MANAGER = "Manager"
    SENIOR_MANAGER = "Senior Manager"
    DIRECTOR = "Director"
    ADMIN = "Admin"


class NotificationChannel(str):
    """Delivery channels for escalation notices."""
    EMAIL = "Email"
    SMS = "SMS"
    WHATSAPP = "WhatsApp"
    IN_APP = "In-App"
    SLACK = "Slack"


class NoticeKind(str):
    """What an escalation log entry records."""
    ESCALATION = "escalation"
    BREACH = "breach"


class Weekday(str):
    """Working day names, Monday first (index matches datetime.weekday())."""
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"


# ========== Lists for validation ==========

VALID_PRIORITIES = [
    Priority.LOW, Priority.MEDIUM,
    Priority.HIGH, Priority.CRITICAL
]
VALID_INFO_TYPES = [
    InfoType.BROCHURE, InfoType.POLICY, InfoType.INVOICE_COPY,
    InfoType.CATALOG, InfoType.TECHNICAL_SPECIFICATION, InfoType.PRICING,
    InfoType.DOCUMENTATION, InfoType.WARRANTY, InfoType.SERVICE,
    InfoType.GENERAL_INQUIRY, InfoType.OTHER
]
VALID_CHANNELS = [
    RequestChannel.WEBSITE, RequestChannel.EMAIL, RequestChannel.WHATSAPP,
    RequestChannel.INTERNAL, RequestChannel.PHONE, RequestChannel.CHAT
]
VALID_STATUS_CATEGORIES = [
    StatusCategory.OPEN, StatusCategory.IN_PROGRESS, StatusCategory.PENDING,
    StatusCategory.RESOLVED, StatusCategory.CLOSED, StatusCategory.CANCELLED
]
TERMINAL_STATUS_CATEGORIES = [
    StatusCategory.RESOLVED, StatusCategory.CLOSED, StatusCategory.CANCELLED
]
VALID_SLA_STATUSES = [SlaStatus.ON_TRACK, SlaStatus.AT_RISK, SlaStatus.BREACHED]
VALID_ESCALATION_ROLES = [
    EscalationRole.TEAM_LEAD, EscalationRole.MANAGER,
    EscalationRole.SENIOR_MANAGER, EscalationRole.DIRECTOR,
    EscalationRole.ADMIN
]
VALID_NOTIFICATION_CHANNELS = [
    NotificationChannel.EMAIL, NotificationChannel.SMS,
    NotificationChannel.WHATSAPP, NotificationChannel.IN_APP,
    NotificationChannel.SLACK
]
WEEKDAYS = [
    Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY,
    Weekday.FRIDAY, Weekday.SATURDAY, Weekday.SUNDAY
]
