"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


# ========== SLA Engine ==========

class NoApplicableRuleError(DomainException):
    """No rule matches a work item and the catalog has no active default."""

    def __init__(
        self,
        info_type: str,
        priority: str,
        channel: Optional[str] = None
    ):
        self.info_type = info_type
        self.priority = priority
        self.channel = channel
        super().__init__(
            f"No SLA rule applies to {info_type}/{priority}/{channel or '-'} "
            "and no active default rule exists",
            {"info_type": info_type, "priority": priority, "channel": channel}
        )


class RuleInactiveError(DomainException):
    """An admin action requires an active rule."""

    def __init__(self, rule_id: str, action: str = "set_default"):
        self.rule_id = rule_id
        super().__init__(
            f"SLA rule {rule_id} is inactive and cannot be used for {action}",
            {"rule_id": rule_id, "action": action}
        )


class LastActiveRuleError(DomainException):
    """Deactivating the rule would leave the catalog without an active rule."""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(
            f"Cannot deactivate SLA rule {rule_id}: it is the only active rule",
            {"rule_id": rule_id}
        )


class RuleInUseError(DomainException):
    """A rule bound to work items cannot be deleted."""

    def __init__(self, rule_id: str, usage_count: int):
        self.rule_id = rule_id
        self.usage_count = usage_count
        super().__init__(
            f"Cannot delete SLA rule {rule_id}: it is bound to {usage_count} work items",
            {"rule_id": rule_id, "usage_count": usage_count}
        )


class ConcurrentUpdateConflict(RepositoryException):
    """Compare-and-swap on a work item's SLA state lost a race."""

    def __init__(self, item_id: str, expected_version: int):
        self.item_id = item_id
        self.expected_version = expected_version
        super().__init__(
            f"SLA state of work item {item_id} changed since version {expected_version}",
            {"item_id": item_id, "expected_version": expected_version}
        )


class DispatchError(ExternalServiceException):
    """Escalation notification could not be delivered."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Dispatch", message, details)


class MalformedRuleWarning(UserWarning):
    """A rule's resolution deadline falls before its response deadline."""
