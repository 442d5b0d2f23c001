"""API layer - FastAPI gateway over the governance service."""

from aif_governance.api.service import GovernanceService, build_storage

__all__ = ["GovernanceService", "build_storage"]
