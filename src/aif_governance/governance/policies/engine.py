"""Policy Engine - deterministic tiering and control derivation.

Tier resolution is a pure function of (intent, pack). Every matching rule
contributes its tier and the highest-ranked one wins (MAX_TIER), so the
result never depends on rule order.
"""

from typing import Optional

from aif_governance.common.exceptions import PolicyError
from aif_governance.governance.policies.loader import PolicySource
from aif_governance.governance.schemas import (
    ControlBundle,
    ControlMode,
    Intent,
    PolicyPack,
    TieringResult,
)


def resolve_tier(intent: Intent, pack: PolicyPack) -> TieringResult:
    """Assign a tier to an intent.

    Args:
        intent: Normalized intent
        pack: Validated policy pack

    Returns:
        TieringResult with the winning tier, the ids of every matched rule
        in pack order, and their rationales.
    """
    best = pack.lowest_tier
    best_rank = 0
    matched_ids = []
    reasons = []

    for rule in pack.rules:
        if not rule.conditions.matches(intent):
            continue
        matched_ids.append(rule.id)
        reasons.append(rule.rationale or f"Matched rule {rule.id}")
        rank = pack.rank(rule.then_tier)
        if rank > best_rank:
            best, best_rank = rule.then_tier, rank

    if not matched_ids:
        reasons.append(f"No rule matched; defaulted to lowest tier {best}")

    return TieringResult(tier=best, matched_rule_ids=matched_ids, reasons=reasons)


def controls_for_tier(tier: str, pack: PolicyPack) -> ControlBundle:
    """Default controls for a tier.

    Raises:
        PolicyError: if the tier is not defined by the pack.
    """
    controls = pack.tier_defaults.get(tier)
    if controls is None:
        raise PolicyError(f"Unknown tier {tier}", details={"tier": tier})
    return controls


def control_mode_for(action: str, controls: ControlBundle, pack: PolicyPack) -> ControlMode:
    """Pick the human-involvement mode for one action under a tier's controls."""
    action = action.strip().lower()
    if controls.approval_required or action in pack.gating.restricted_actions:
        return ControlMode.HITL
    if action in pack.gating.write_actions:
        return ControlMode.HOTL
    return ControlMode.AUTO


def is_sandbox(environment: Optional[str], pack: PolicyPack) -> bool:
    return bool(environment) and environment.strip().lower() in pack.gating.sandbox_environments


class PolicyEngine:
    """Thin stateful wrapper binding the pure functions to a policy source."""

    def __init__(self, source: PolicySource):
        self.source = source
        self.pack = source.load_policy_pack()

    @property
    def policy_version(self) -> str:
        return self.pack.version

    def resolve_tier(self, intent: Intent) -> TieringResult:
        return resolve_tier(intent, self.pack)

    def controls_for_tier(self, tier: str) -> ControlBundle:
        return controls_for_tier(tier, self.pack)

    def control_mode_for(self, action: str, controls: ControlBundle) -> ControlMode:
        return control_mode_for(action, controls, self.pack)

    def is_sandbox(self, environment: Optional[str]) -> bool:
        return is_sandbox(environment, self.pack)

    def is_known_tier(self, tier: str) -> bool:
        return tier in self.pack.tier_order
