"""Logging helpers."""

from aif_governance.common.logging.logger import get_logger

__all__ = ["get_logger"]
