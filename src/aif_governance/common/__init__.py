"""Common utilities - logging, config, exceptions."""

from aif_governance.common.logging.logger import get_logger
from aif_governance.common.config import Config, get_config, reset_config
from aif_governance.common.exceptions import (
    GovernanceError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    PolicyError,
    StateConflictError,
    StorageError,
    LogConflictError,
    LedgerIntegrityError,
)

__all__ = [
    # Logging
    "get_logger",
    # Config
    "Config",
    "get_config",
    "reset_config",
    # Exceptions
    "GovernanceError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "PolicyError",
    "StateConflictError",
    "StorageError",
    "LogConflictError",
    "LedgerIntegrityError",
]
