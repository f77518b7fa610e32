"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from src.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    NoApplicableRuleError,
    RuleInactiveError,
    LastActiveRuleError,
    RuleInUseError,
    ConcurrentUpdateConflict,
    DispatchError,
    MalformedRuleWarning,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "NoApplicableRuleError",
    "RuleInactiveError",
    "LastActiveRuleError",
    "RuleInUseError",
    "ConcurrentUpdateConflict",
    "DispatchError",
    "MalformedRuleWarning",
]
