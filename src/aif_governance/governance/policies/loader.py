"""Policy pack loading - YAML/JSON files into a validated PolicyPack."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from aif_governance.common.exceptions import PolicyError
from aif_governance.governance.schemas import PolicyPack

logger = logging.getLogger(__name__)

SUPPORTED_MERGE_STRATEGIES = ("MAX_TIER",)


class PolicySource(Protocol):
    """Anything that can hand out the current policy pack."""

    def load_policy_pack(self) -> PolicyPack:
        ...


def _require(raw: Dict[str, Any], path: str) -> Any:
    node: Any = raw
    for part in path.split("."):
        if not isinstance(node, dict) or node.get(part) is None:
            raise PolicyError(f"Policy missing: {path}", details={"field": path})
        node = node[part]
    return node


def parse_policy_pack(raw: Any) -> PolicyPack:
    """Validate a raw pack document and enforce load-time invariants.

    Accepts the on-disk layout::

        version: ...
        generatedAt: ...
        tiers: [{tier, autonomyBehavior, governanceRequirements, defaultControls}]
        tiering: {mergeStrategy, tierOrder, rules: [...]}
        gating: {restrictedActions, writeActions, sandboxEnvironments}

    Raises:
        PolicyError: if anything is missing or inconsistent.
    """
    if not isinstance(raw, dict):
        raise PolicyError("Policy pack must be a mapping")

    _require(raw, "version")
    tiers = _require(raw, "tiers")
    rules = _require(raw, "tiering.rules")
    if not isinstance(tiers, list) or not tiers:
        raise PolicyError("Policy missing: tiers[]", details={"field": "tiers"})
    if not isinstance(rules, list):
        raise PolicyError("Policy missing: tiering.rules[]", details={"field": "tiering.rules"})

    tiering = raw["tiering"]
    tier_order = tiering.get("tierOrder") or tiering.get("tier_order")
    if tier_order is None:
        # fall back to the order tiers are declared in
        tier_order = [t.get("tier") for t in tiers if isinstance(t, dict)]

    document = {
        "version": str(raw["version"]),
        "generated_at": raw.get("generatedAt") or raw.get("generated_at"),
        "tier_order": tier_order,
        "rules": rules,
        "tier_definitions": tiers,
        "merge_strategy": tiering.get("mergeStrategy") or tiering.get("merge_strategy") or "MAX_TIER",
    }
    if raw.get("gating") is not None:
        document["gating"] = raw["gating"]

    try:
        pack = PolicyPack.model_validate(document)
    except PydanticValidationError as e:
        raise PolicyError(
            "Policy pack failed schema validation",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e

    _check_invariants(pack)
    return pack


def _check_invariants(pack: PolicyPack) -> None:
    order = pack.tier_order
    if len(set(order)) != len(order):
        raise PolicyError("tier_order contains duplicates", details={"tier_order": list(order)})

    known = set(order)

    if pack.merge_strategy not in SUPPORTED_MERGE_STRATEGIES:
        raise PolicyError(
            f"Unsupported merge strategy: {pack.merge_strategy}",
            details={"supported": list(SUPPORTED_MERGE_STRATEGIES)},
        )

    seen_rules = set()
    for rule in pack.rules:
        if rule.id in seen_rules:
            raise PolicyError(f"Duplicate rule id: {rule.id}", details={"rule_id": rule.id})
        seen_rules.add(rule.id)
        if rule.then_tier not in known:
            raise PolicyError(
                f"Rule {rule.id} targets unknown tier {rule.then_tier}",
                details={"rule_id": rule.id, "tier": rule.then_tier},
            )

    defined = [t.tier for t in pack.tier_definitions]
    if len(set(defined)) != len(defined):
        raise PolicyError("tiers[] declares a tier twice", details={"tiers": defined})
    for tier in defined:
        if tier not in known:
            raise PolicyError(f"Defaults declared for unknown tier {tier}", details={"tier": tier})
    missing = [tier for tier in order if tier not in defined]
    if missing:
        raise PolicyError(f"Tiers without default controls: {missing}", details={"tiers": missing})


def load_policy_pack(path: Union[str, Path]) -> PolicyPack:
    """Read a YAML or JSON pack from disk (format chosen by suffix)."""
    path = Path(path)
    if not path.exists():
        raise PolicyError(f"Policy file not found: {path}", details={"path": str(path)})

    with open(path, "r") as f:
        if path.suffix.lower() == ".json":
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise PolicyError(f"Policy file is not valid JSON: {path}") from e
        else:
            try:
                raw = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise PolicyError(f"Policy file is not valid YAML: {path}") from e

    pack = parse_policy_pack(raw)
    logger.info(
        f"Loaded policy pack {pack.version} from {path} "
        f"({len(pack.rules)} rules, tiers {list(pack.tier_order)})"
    )
    return pack


class FilePolicySource:
    """Policy source backed by a file on disk.

    The pack is read once and cached; ``reload()`` re-reads it. A failed
    reload keeps serving the previous pack and re-raises the error.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._pack: Optional[PolicyPack] = None

    def load_policy_pack(self) -> PolicyPack:
        if self._pack is None:
            self._pack = load_policy_pack(self.path)
        return self._pack

    def reload(self) -> PolicyPack:
        self._pack = load_policy_pack(self.path)
        return self._pack


class StaticPolicySource:
    """Policy source wrapping an already-built pack."""

    def __init__(self, pack: PolicyPack):
        self._pack = pack

    def load_policy_pack(self) -> PolicyPack:
        return self._pack
