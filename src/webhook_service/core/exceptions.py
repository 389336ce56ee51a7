"""Common exceptions for domain, service and repository layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for the webhook service."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class ConfigurationError(WebhookServiceError):
    """Raised when a subscription configuration is rejected."""


class InvalidStatusTransitionError(WebhookServiceError):
    """Raised when an entity attempts an unsupported status change."""


class TransformError(WebhookServiceError):
    """Raised by payload transformers when a script cannot produce a payload."""
