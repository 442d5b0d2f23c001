"""Unit tests for tier resolution and control derivation."""

import random

import pytest

from aif_governance.common.exceptions import PolicyError
from aif_governance.governance.policies.engine import (
    PolicyEngine,
    control_mode_for,
    controls_for_tier,
    is_sandbox,
    resolve_tier,
)
from aif_governance.governance.policies.loader import StaticPolicySource
from aif_governance.governance.schemas import ControlMode, DataSensitivity, Intent


def intent(actions=(), systems=(), sensitivity="INTERNAL", cross_border=False) -> Intent:
    return Intent(
        actions=list(actions),
        systems=list(systems),
        data_sensitivity=sensitivity,
        cross_border=cross_border,
    )


class TestResolveTier:
    """Test MAX_TIER resolution."""

    def test_write_with_pii_takes_highest_tier(self, pack):
        """Every matching rule is reported; the highest tier wins."""
        result = resolve_tier(intent(["update_record"], ["salesforce"], "PII"), pack)

        assert result.tier == "A5"
        assert result.matched_rule_ids == ["R-WRITE", "R-PII"]
        assert "Writes to a system of record" in result.reasons
        assert "Handles personal data" in result.reasons

    def test_read_only_intent(self, pack):
        result = resolve_tier(intent(["retrieve"], ["kb"]), pack)
        assert result.tier == "A1"
        assert result.matched_rule_ids == ["R-READ-ONLY"]

    def test_rule_without_rationale_gets_generated_reason(self, pack):
        result = resolve_tier(intent(["retrieve"], ["kb"], "CONFIDENTIAL"), pack)
        assert result.tier == "A3"
        assert "Matched rule R-CONFIDENTIAL" in result.reasons

    def test_actions_only_fails_on_empty_actions(self, pack):
        """An empty action set is not 'only read actions'."""
        result = resolve_tier(intent(), pack)
        assert "R-READ-ONLY" not in result.matched_rule_ids

    def test_actions_only_fails_when_any_action_outside(self, pack):
        result = resolve_tier(intent(["retrieve", "send_message"]), pack)
        assert "R-READ-ONLY" not in result.matched_rule_ids

    def test_no_match_defaults_to_lowest_tier(self, pack):
        result = resolve_tier(intent(["send_message"], ["mail"]), pack)
        assert result.tier == "A1"
        assert result.matched_rule_ids == []
        assert result.reasons == ["No rule matched; defaulted to lowest tier A1"]

    def test_cross_border_condition(self, pack):
        assert resolve_tier(intent(["retrieve"], cross_border=True), pack).tier == "A5"
        assert resolve_tier(intent(["retrieve"], cross_border=False), pack).tier == "A1"

    def test_matching_is_case_insensitive(self, pack):
        result = resolve_tier(intent([" Update_Record "], ["SalesForce"]), pack)
        assert "R-WRITE" in result.matched_rule_ids

    def test_deterministic(self, pack):
        sample = intent(["update_record", "delete_record"], ["salesforce"], "PII", True)
        results = {resolve_tier(sample, pack).model_dump_json() for _ in range(20)}
        assert len(results) == 1

    def test_rule_order_does_not_change_tier(self, pack):
        """Shuffling rules changes only the order ids are listed in."""
        sample = intent(["update_record", "delete_record"], ["salesforce"], "PII")
        expected = resolve_tier(sample, pack)

        rules = list(pack.rules)
        rng = random.Random(7)
        for _ in range(10):
            rng.shuffle(rules)
            shuffled = pack.model_copy(update={"rules": tuple(rules)})
            result = resolve_tier(sample, shuffled)
            assert result.tier == expected.tier == "A6"
            assert sorted(result.matched_rule_ids) == sorted(expected.matched_rule_ids)

    def test_adding_a_matching_rule_never_lowers_tier(self, pack):
        sample = intent(["update_record"], ["salesforce"], "PII")
        base = resolve_tier(sample, pack).tier

        from aif_governance.governance.schemas import Rule

        extra = Rule.model_validate({"id": "R-LOW", "if": {}, "thenTier": "A1"})
        widened = pack.model_copy(update={"rules": pack.rules + (extra,)})
        assert pack.rank(resolve_tier(sample, widened).tier) >= pack.rank(base)


class TestControls:
    """Test control derivation and control modes."""

    def test_controls_for_tier(self, pack):
        controls = controls_for_tier("A6", pack)
        assert controls.sandbox_only is True
        assert controls.approval_required is True

    def test_unknown_tier_raises(self, pack):
        with pytest.raises(PolicyError, match="Unknown tier A9"):
            controls_for_tier("A9", pack)

    def test_approval_required_means_hitl(self, pack):
        controls = controls_for_tier("A5", pack)
        assert control_mode_for("retrieve", controls, pack) == ControlMode.HITL

    def test_restricted_action_means_hitl(self, pack):
        controls = controls_for_tier("A1", pack)
        assert control_mode_for("delete_record", controls, pack) == ControlMode.HITL

    def test_write_action_means_hotl(self, pack):
        controls = controls_for_tier("A1", pack)
        assert control_mode_for("Update_Record", controls, pack) == ControlMode.HOTL

    def test_read_action_means_auto(self, pack):
        controls = controls_for_tier("A1", pack)
        assert control_mode_for("retrieve", controls, pack) == ControlMode.AUTO

    @pytest.mark.parametrize("env,expected", [
        ("sandbox", True),
        ("Dev", True),
        ("test", True),
        ("production", False),
        ("", False),
        (None, False),
    ])
    def test_is_sandbox(self, pack, env, expected):
        assert is_sandbox(env, pack) is expected


class TestPolicyEngine:
    """Test the stateful wrapper."""

    def test_exposes_pack_and_version(self, pack):
        engine = PolicyEngine(StaticPolicySource(pack))
        assert engine.policy_version == "test-1.0"
        assert engine.is_known_tier("A3")
        assert not engine.is_known_tier("B1")
        assert engine.resolve_tier(intent(["retrieve"])).tier == "A1"
        assert engine.controls_for_tier("A4").human_in_loop is True

    def test_intent_normalization(self):
        normalized = intent([" Retrieve ", "retrieve", ""], ["KB"], "pii")
        assert normalized.actions == frozenset({"retrieve"})
        assert normalized.systems == frozenset({"kb"})
        assert normalized.data_sensitivity == DataSensitivity.PII
