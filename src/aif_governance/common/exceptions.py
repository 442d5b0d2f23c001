"""Custom exceptions for the governance control plane.

Provides a hierarchy of exceptions for different error types.
All exceptions inherit from GovernanceError and carry a stable,
machine-readable code alongside the human-readable message.
"""

from typing import Any, Dict, Optional


class GovernanceError(Exception):
    """Base exception for all governance errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: str = "GOVERNANCE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(GovernanceError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIG_ERROR", details=details)


class ValidationError(GovernanceError):
    """Raised when input validation fails (malformed intent, missing field)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundError(GovernanceError):
    """Raised for an unknown agent, decision or override id."""

    def __init__(
        self,
        message: str,
        entity: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["entity"] = entity
        details["entity_id"] = entity_id
        super().__init__(message, code="NOT_FOUND", details=details)


class PolicyError(GovernanceError):
    """Raised when the policy pack is internally inconsistent.

    Operator-facing. Never caught per request.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="POLICY_ERROR", details=details)


class StateConflictError(GovernanceError):
    """Raised on an invalid state transition (e.g. approving a decided decision)."""

    def __init__(
        self,
        message: str,
        current_state: str,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["current_state"] = current_state
        super().__init__(message, code="STATE_CONFLICT", details=details)


class StorageError(GovernanceError):
    """Raised when the storage collaborator fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="STORAGE_ERROR", details=details)


class LogConflictError(StorageError):
    """Raised when an append lost the race for the log tail."""

    def __init__(self, stream: str, expected_last_id: int, actual_last_id: int):
        super().__init__(
            f"Log {stream} moved: expected tail {expected_last_id}, found {actual_last_id}",
            details={
                "stream": stream,
                "expected_last_id": expected_last_id,
                "actual_last_id": actual_last_id,
            },
        )
        self.code = "LOG_CONFLICT"


class LedgerIntegrityError(GovernanceError):
    """Raised when the ledger hash chain does not validate."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="LEDGER_INTEGRITY_ERROR", details=details)
