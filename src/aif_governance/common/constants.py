"""Centralized constants for the governance control plane."""


# ===== LEDGER =====
class LedgerConstants:
    GENESIS_HASH = "GENESIS"
    HASH_ALGORITHM = "sha256"
    MAX_APPEND_RETRIES = 5


# ===== OVERRIDES =====
class OverrideConstants:
    DEFAULT_TTL_MINUTES = 60
    MIN_TTL_MINUTES = 1
    MAX_TTL_MINUTES = 24 * 60


# ===== INTENT DEFAULTS =====
class IntentConstants:
    DEFAULT_ACTIONS = ("retrieve",)
    DEFAULT_SYSTEMS = ("kb",)
    DEFAULT_DATA_SENSITIVITY = "INTERNAL"


# ===== DATA & QUERY LIMITS =====
class DataConstants:
    DEFAULT_QUERY_LIMIT = 100
    MAX_QUERY_LIMIT = 1000
    IDENTITY_HASH_LENGTH = 12
