"""Exception types shared across layers."""

from __future__ import annotations


class OpenFangError(Exception):
    """Base class for application errors."""


class ToolExecutionError(OpenFangError):
    """A tool is unknown, disabled, got invalid input, or failed while running."""


class ProviderAdapterError(OpenFangError):
    """The model backend could not produce a response (network, auth, payload)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidScheduleDefinition(OpenFangError):
    """A schedule's cron expression or timezone cannot be evaluated."""


class DeliveryError(OpenFangError):
    """Outbound delivery of text to its destination failed."""
