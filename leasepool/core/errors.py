from __future__ import annotations


class LeasePoolError(Exception):
    """Base error for leasepool."""


class ProviderConfigError(LeasePoolError):
    """Missing or invalid provider configuration."""


class StoreError(LeasePoolError):
    """Record store failure."""


class ItemAlreadyExists(StoreError):
    """A create collided with an existing record."""


class UnknownItem(StoreError):
    """The record addressed by an update or delete does not exist."""


class ConcurrentModification(StoreError):
    """The stored version token no longer matches the caller's expectation."""


class SchemaMismatch(StoreError):
    """Stored record carries a schema version outside the supported range."""


class RecordValidationError(StoreError):
    """Values rejected before they reach the store."""


class CursorError(StoreError, ValueError):
    """Malformed, tampered or foreign pagination cursor."""


class ProvisioningError(LeasePoolError):
    """Provisioning API request failure."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ThrottlingError(ProvisioningError):
    """Provisioning API rate limited the request."""


class ServiceUnavailableError(ProvisioningError):
    """Provisioning API is temporarily unavailable."""


class OperationInProgressError(ProvisioningError):
    """Another operation is already running against the target."""


class TargetNotFoundError(ProvisioningError):
    """Deployment target does not exist or was deleted."""


class ProvisioningValidationError(ProvisioningError):
    """Provisioning API rejected the request parameters."""


class CostServiceError(LeasePoolError):
    """Cost service request failure."""


class EventPublishError(LeasePoolError):
    """Event bus publish failure."""
