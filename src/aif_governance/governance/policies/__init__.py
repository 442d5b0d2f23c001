"""Policies module - deterministic tiering and control derivation."""

from aif_governance.governance.policies.engine import (
    PolicyEngine,
    control_mode_for,
    controls_for_tier,
    is_sandbox,
    resolve_tier,
)
from aif_governance.governance.policies.loader import (
    FilePolicySource,
    PolicySource,
    StaticPolicySource,
    load_policy_pack,
    parse_policy_pack,
)

__all__ = [
    "PolicyEngine",
    "control_mode_for",
    "controls_for_tier",
    "is_sandbox",
    "resolve_tier",
    "FilePolicySource",
    "PolicySource",
    "StaticPolicySource",
    "load_policy_pack",
    "parse_policy_pack",
]
