"""Audit module - storage backends and the hash-chained ledger."""

from aif_governance.governance.audit.ledger import (
    Ledger,
    canonical_json,
    compute_hash,
)
from aif_governance.governance.audit.storage import (
    DynamoDBStorage,
    FileStorage,
    InMemoryStorage,
    Storage,
)

__all__ = [
    "Ledger",
    "canonical_json",
    "compute_hash",
    "Storage",
    "InMemoryStorage",
    "FileStorage",
    "DynamoDBStorage",
]
