"""Exception hierarchy shared by the stores, the pipeline and the API layer."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base exception for all soil_telemetry errors."""


class TelemetryValidationError(TelemetryError, ValueError):
    """A message or request is malformed or misses a required field."""


class OtaTransitionError(TelemetryValidationError):
    """An OTA status report does not follow the allowed state order."""

    def __init__(self, message: str, *, previous: str | None = None, requested: str = "") -> None:
        self.previous = previous
        self.requested = requested
        super().__init__(message)


class StorageError(TelemetryError):
    """A storage port operation failed."""

    def __init__(self, message: str, *, operation: str = "", device_id: str | None = None) -> None:
        self.operation = operation
        self.device_id = device_id
        super().__init__(message)


class BackendUnavailable(StorageError):
    """Network or disk failure while talking to the backend."""


class CorruptRecordError(StorageError):
    """A stored row could not be mapped (only raised when strict reads are on)."""


class InvalidKeyError(StorageError):
    """A device id cannot be used as a storage key."""


class StorageConfigurationError(TelemetryError):
    """A backend could not be constructed. Fatal at startup."""
