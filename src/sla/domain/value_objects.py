"""
SLA Value Objects
==================

Immutable value objects for SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.config import (
    NotificationChannel, Weekday,
    VALID_ESCALATION_ROLES, VALID_NOTIFICATION_CHANNELS, WEEKDAYS
)


class BusinessHoursConfig(BaseModel):
    """
    Working schedule an SLA clock runs on.

    When ``enabled`` is False the clock runs 24/7 and every other
    field is ignored.
    """
    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="False means the clock runs 24/7")
    timezone: str = Field(default="Asia/Kolkata", description="IANA timezone of the schedule")
    working_days: Tuple[str, ...] = Field(
        default=(
            Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY,
            Weekday.THURSDAY, Weekday.FRIDAY
        ),
        description="Weekday names the clock runs on"
    )
    start_time: time = Field(default=time(9, 0), description="Daily window start (local)")
    end_time: time = Field(default=time(18, 0), description="Daily window end (local, exclusive)")

    @model_validator(mode="after")
    def validate_schedule(self) -> "BusinessHoursConfig":
        """Validate the schedule only when it is in force."""
        if not self.enabled:
            return self

        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")

        if not self.working_days:
            raise ValueError("at least one working day is required")

        unknown = [day for day in self.working_days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown working days: {unknown}")

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {self.timezone}") from e

        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def weekday_indices(self) -> FrozenSet[int]:
        """Working days as ``datetime.weekday()`` indices."""
        return frozenset(WEEKDAYS.index(day) for day in self.working_days)


@dataclass(frozen=True)
class EscalationTarget:
    """Who an escalation level routes to."""
    role: str
    team_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def recipient(self) -> str:
        """Most specific recipient: user, then team, then role."""
        return self.user_id or self.team_id or self.role


class EscalationLevel(BaseModel):
    """
    One rung of a rule's escalation ladder.

    ``escalate_after`` is measured in business time from the work
    item's creation.
    """
    model_config = ConfigDict(frozen=True)

    level: int = Field(ge=1, description="Escalation level (1-based)")
    escalate_after: timedelta = Field(description="Business time after creation")
    escalate_to_role: str = Field(description="Role notified at this level")
    escalate_to_team: Optional[str] = Field(default=None, description="Team notified")
    escalate_to_user: Optional[str] = Field(default=None, description="User notified")
    channels: Tuple[str, ...] = Field(
        default=(),
        description="Notification channels (empty means the rule's defaults)"
    )

    @field_validator("escalate_after")
    @classmethod
    def validate_escalate_after(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("escalate_after cannot be negative")
        return v

    @field_validator("escalate_to_role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        if v not in VALID_ESCALATION_ROLES:
            raise ValueError(f"escalate_to_role must be one of {VALID_ESCALATION_ROLES}")
        return v

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        unknown = [c for c in v if c not in VALID_NOTIFICATION_CHANNELS]
        if unknown:
            raise ValueError(f"unknown notification channels: {unknown}")
        return v

    @property
    def target(self) -> EscalationTarget:
        return EscalationTarget(
            role=self.escalate_to_role,
            team_id=self.escalate_to_team,
            user_id=self.escalate_to_user
        )


class NotificationSettings(BaseModel):
    """Per-rule switches for escalation and breach notices."""
    model_config = ConfigDict(frozen=True)

    notify_on_escalation: bool = True
    notify_on_sla_breach: bool = True
    channels: Tuple[str, ...] = (NotificationChannel.EMAIL, NotificationChannel.IN_APP)

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        unknown = [c for c in v if c not in VALID_NOTIFICATION_CHANNELS]
        if unknown:
            raise ValueError(f"unknown notification channels: {unknown}")
        return v


@dataclass(frozen=True)
class DueDates:
    """Response and resolution deadlines of a work item."""
    response_due_at: datetime
    resolution_due_at: datetime

    @property
    def is_malformed(self) -> bool:
        """Resolution due before response; tolerated but worth a warning."""
        return self.resolution_due_at < self.response_due_at
