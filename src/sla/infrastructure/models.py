"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, String, DateTime, Boolean, Integer, Float, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base
from src.config import Priority, StatusCategory


class SlaRuleModel(Base):
    """
    Database model for SlaRule entity.

    Maps to the 'sla_rules' table. Nested rule settings are stored as JSON.
    """
    __tablename__ = "sla_rules"

    # Business identifier (SLA-YYYYMMDD-NNNN)
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Matching attributes
    info_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    request_channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Durations in hours of business time
    response_time_hours: Mapped[float] = mapped_column(Float, nullable=False)
    resolution_time_hours: Mapped[float] = mapped_column(Float, nullable=False)

    # Nested settings
    escalation_levels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    business_hours: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    notification_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Flags
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class WorkItemModel(Base):
    """
    Database model for WorkItem entity.

    Maps to the 'work_items' table. CRM fields are overwritten on ingest;
    the sla_* columns are written only through version-checked updates.
    """
    __tablename__ = "work_items"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Business identifier (CRM work item ID)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)

    # CRM attributes
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=Priority.MEDIUM)
    info_type: Mapped[str] = mapped_column(String(50), nullable=False)
    request_channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status_category: Mapped[str] = mapped_column(String(20), nullable=False, default=StatusCategory.OPEN, index=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # SLA state
    sla_rule_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    sla_response_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_resolution_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    sla_escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sla_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_escalated_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sla_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class EscalationEventModel(Base):
    """
    Database model for EscalationEvent entity.

    Maps to the 'escalation_events' table.
    """
    __tablename__ = "escalation_events"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Work item reference
    item_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Escalation details
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    escalated_to: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    channels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="escalation")

    # Notification tracking
    notification_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
