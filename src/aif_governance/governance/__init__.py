"""Governance layer - tiering, gating, overrides and the audit ledger."""

from aif_governance.governance.adapters import AdapterRegistry, SimulatedAdapter
from aif_governance.governance.audit import Ledger, Storage, InMemoryStorage, FileStorage, DynamoDBStorage
from aif_governance.governance.decisions import DecisionEngine
from aif_governance.governance.intent import KeywordSignalExtractor, build_intent
from aif_governance.governance.override import OverrideManager
from aif_governance.governance.policies import PolicyEngine, FilePolicySource, controls_for_tier, resolve_tier
from aif_governance.governance.redact import AuditRedactor, hash_identity
from aif_governance.governance.registry import AgentRegistry

__all__ = [
    "AdapterRegistry",
    "SimulatedAdapter",
    "Ledger",
    "Storage",
    "InMemoryStorage",
    "FileStorage",
    "DynamoDBStorage",
    "DecisionEngine",
    "KeywordSignalExtractor",
    "build_intent",
    "OverrideManager",
    "PolicyEngine",
    "FilePolicySource",
    "controls_for_tier",
    "resolve_tier",
    "AuditRedactor",
    "hash_identity",
    "AgentRegistry",
]
