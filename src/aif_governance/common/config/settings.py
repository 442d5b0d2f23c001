"""Configuration management - Centralized configuration for the control plane.

Provides environment-aware configuration with sensible defaults.
All configuration is loaded from environment variables with fallbacks.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from aif_governance.common.constants import OverrideConstants
from aif_governance.common.exceptions import ConfigurationError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageType(str, Enum):
    """Storage backend types."""
    MEMORY = "memory"
    FILE = "file"
    DYNAMODB = "dynamodb"


def _get_project_root() -> Path:
    """Get the project root directory."""
    # settings.py -> config -> common -> aif_governance -> src -> project_root
    current = Path(__file__).resolve()
    return current.parent.parent.parent.parent.parent


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """Central configuration object for the governance control plane.

    All settings can be overridden via environment variables prefixed with AIF_.

    Example:
        AIF_ENVIRONMENT=production
        AIF_STORAGE_TYPE=file
        AIF_STORAGE_DIR=/var/lib/aif
    """

    # Core settings
    environment: Environment = field(
        default_factory=lambda: Environment(
            os.getenv("AIF_ENVIRONMENT", "development")
        )
    )
    debug: bool = field(
        default_factory=lambda: os.getenv("AIF_DEBUG", "false").lower() == "true"
    )
    log_level: LogLevel = field(
        default_factory=lambda: LogLevel(os.getenv("AIF_LOG_LEVEL", "INFO"))
    )

    # Paths
    project_root: Path = field(default_factory=_get_project_root)

    # API settings
    api_host: str = field(
        default_factory=lambda: os.getenv("AIF_API_HOST", "0.0.0.0")
    )
    api_port: int = field(
        default_factory=lambda: int(os.getenv("AIF_API_PORT", "8000"))
    )
    cors_origins: List[str] = field(
        default_factory=lambda: _split_csv(os.getenv("AIF_CORS_ORIGINS", ""))
    )

    # Policy settings
    policy_file: Optional[Path] = field(
        default_factory=lambda: Path(os.environ["AIF_POLICY_FILE"])
        if os.getenv("AIF_POLICY_FILE") else None
    )

    # Storage settings
    storage_type: StorageType = field(
        default_factory=lambda: StorageType(
            os.getenv("AIF_STORAGE_TYPE", "memory")
        )
    )
    storage_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("AIF_STORAGE_DIR", "./data/governance")
        )
    )
    dynamodb_table: Optional[str] = field(
        default_factory=lambda: os.getenv("AIF_DYNAMODB_TABLE")
    )
    aws_region: str = field(
        default_factory=lambda: os.getenv("AWS_DEFAULT_REGION", "us-east-1")
    )
    ledger_stream: str = field(
        default_factory=lambda: os.getenv("AIF_LEDGER_STREAM", "governance")
    )

    # Override settings
    default_override_ttl_minutes: int = field(
        default_factory=lambda: int(
            os.getenv(
                "AIF_DEFAULT_OVERRIDE_TTL_MINUTES",
                str(OverrideConstants.DEFAULT_TTL_MINUTES),
            )
        )
    )

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.storage_type == StorageType.DYNAMODB and not self.dynamodb_table:
            raise ConfigurationError(
                "AIF_DYNAMODB_TABLE must be set when using DynamoDB storage"
            )

        if not self.ledger_stream or "/" in self.ledger_stream:
            raise ConfigurationError(
                f"Invalid ledger stream name: {self.ledger_stream!r}"
            )

        if self.default_override_ttl_minutes <= 0:
            raise ConfigurationError(
                "AIF_DEFAULT_OVERRIDE_TTL_MINUTES must be positive"
            )

        # Warn about debug in production
        if self.environment == Environment.PRODUCTION and self.debug:
            import warnings
            warnings.warn(
                "Debug mode is enabled in production environment",
                RuntimeWarning,
                stacklevel=2
            )

    @property
    def config_dir(self) -> Path:
        """Get the config directory path."""
        return self.project_root / "config"

    @property
    def resolved_policy_file(self) -> Path:
        """Policy pack path, falling back to the bundled pack."""
        return self.policy_file or self.config_dir / "aura_policy_pack.yaml"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        Config: The global configuration singleton.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
