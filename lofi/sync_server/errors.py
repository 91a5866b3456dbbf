"""
Error types for the Lofi sync engine.

This module defines every exception raised by the backup, restore and
migration components:
- BackupError: Base exception
- ConnectivityError: Remote unreachable or credential rejected
- ValidationError: Snapshot document is malformed
- TransportError: Remote answered with a non-success response
- NoBackupError: The requested remote object does not exist
- RotationError: Cleanup of historical snapshots failed
- SchemaError: The declared canonical schema is inconsistent
- BusyError: A backup or restore is already running

Invariants:
    - All errors inherit from BackupError
    - Errors carry a stable code for programmatic handling
    - Messages never include bearer tokens or secret keys
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for all sync engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BACKUP_ERROR"
        self.details = details or {}


class ConnectivityError(BackupError):
    """Remote storage cannot be reached.

    Raised when:
    - The remote endpoint is unreachable
    - No bearer credential is available
    - The credential is rejected (401/403)
    """

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        super().__init__(message, code="CONNECTIVITY_ERROR", details={"endpoint": endpoint})
        self.endpoint = endpoint


class ValidationError(BackupError):
    """Snapshot document failed validation.

    Raised before any local write happens, so the canonical store is
    left untouched.
    """

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"collection": collection, "errors": errors or []},
        )
        self.collection = collection
        self.errors = errors or []


class TransportError(BackupError):
    """Remote storage returned a non-success response."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"status_code": status_code, "operation": operation},
        )
        self.status_code = status_code
        self.operation = operation


class NoBackupError(BackupError):
    """No backup object with the requested name exists remotely."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No backup found: {name}", code="NO_BACKUP", details={"name": name})
        self.name = name


class RotationError(BackupError):
    """Deleting stale historical snapshots failed.

    Rotation is housekeeping: this error is logged and never fails
    the backup that triggered it.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="ROTATION_ERROR")


class SchemaError(BackupError):
    """The declared canonical schema is inconsistent."""

    def __init__(self, message: str, collection: str | None = None) -> None:
        super().__init__(message, code="SCHEMA_ERROR", details={"collection": collection})
        self.collection = collection


class BusyError(BackupError):
    """Another backup or restore is in flight."""

    def __init__(self, message: str = "A backup or restore is already in progress") -> None:
        super().__init__(message, code="BUSY")
