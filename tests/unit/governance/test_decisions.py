"""Unit tests for the decision gate and lifecycle.

Tests that every evaluation writes exactly one ledger event, that control
modes map onto the right initial status, and that the PENDING -> APPROVED
| DENIED -> EXECUTED state machine cannot be bypassed.
"""

from unittest.mock import patch

import pytest

from aif_governance.common.exceptions import NotFoundError, StateConflictError, StorageError, ValidationError
from aif_governance.governance.adapters import AdapterRegistry
from aif_governance.governance.redact import hash_identity
from aif_governance.governance.schemas import (
    ControlMode,
    DecisionOutcome,
    DecisionStatus,
    ExecutionOutcome,
    Intent,
    LedgerEventType,
    ReasonCode,
)


class RaisingAdapter:
    def execute(self, system, action, payload):
        raise ConnectionError("salesforce unreachable")


class RecordingAdapter:
    def __init__(self):
        self.calls = []

    def execute(self, system, action, payload):
        self.calls.append((system, action, payload))
        return ExecutionOutcome(system=system, action=action, success=True, simulated=True)


class TestGateDenials:
    """Test agent-state denials."""

    def test_unregistered_agent(self, service):
        length = len(service.ledger)
        result = service.evaluate("agt_missing", "retrieve", "kb")

        assert result.allowed is False
        assert result.outcome == DecisionOutcome.DENY
        assert result.reason == ReasonCode.AGENT_NOT_REGISTERED
        assert result.decision is None
        assert len(service.ledger) == length + 1
        assert service.ledger.latest_event().type == LedgerEventType.GATE_DENIED.value

    def test_unapproved_agent(self, service, make_agent):
        agent = make_agent(approve=False)
        assert service.evaluate(agent.id, "retrieve", "kb").reason == ReasonCode.AGENT_NOT_APPROVED

    @pytest.mark.parametrize("operation,reason", [
        ("pause_agent", ReasonCode.AGENT_PAUSED),
        ("kill_agent", ReasonCode.AGENT_KILLED),
        ("terminate_agent", ReasonCode.AGENT_TERMINATED),
    ])
    def test_blocked_agent(self, service, make_agent, operation, reason):
        agent = make_agent()
        getattr(service, operation)(agent.id, "ops")

        length = len(service.ledger)
        result = service.evaluate(agent.id, "retrieve", "kb", actor="carol")

        assert result.allowed is False
        assert result.reason == reason
        assert len(service.ledger) == length + 1

        event = service.ledger.latest_event(LedgerEventType.GATE_DENIED)
        assert event.payload["agent_id"] == agent.id
        assert event.payload["reason"] == reason.value
        assert event.payload["actor"] == hash_identity("carol")
        assert service.list_decisions(agent.id) == []

    @pytest.mark.parametrize("action,target", [("", "kb"), ("retrieve", "  "), (None, "kb")])
    def test_missing_action_or_target(self, service, make_agent, action, target):
        agent = make_agent()
        length = len(service.ledger)

        with pytest.raises(ValidationError):
            service.evaluate(agent.id, action, target)

        assert len(service.ledger) == length + 1
        assert service.ledger.latest_event().payload["reason"] == "invalid_request"


class TestControlModes:
    """Test initial decision status per control mode."""

    def test_auto(self, service, make_agent):
        agent = make_agent()
        result = service.evaluate(agent.id, "Retrieve", "KB")

        assert result.allowed is True
        assert result.outcome == DecisionOutcome.ALLOW
        assert result.reason == ReasonCode.ALLOWED_AUTO
        assert result.control_mode == ControlMode.AUTO
        assert result.decision.status == DecisionStatus.APPROVED
        assert result.decision.action == "retrieve"
        assert result.decision.target == "kb"
        assert result.decision.policy_version == "test-1.0"

    def test_hotl_for_write_action(self, service, make_agent):
        agent = make_agent()
        result = service.evaluate(agent.id, "update_record", "salesforce")
        assert result.allowed is True
        assert result.reason == ReasonCode.ALLOWED_HOTL
        assert result.control_mode == ControlMode.HOTL

    def test_hitl_for_restricted_action(self, service, make_agent):
        agent = make_agent()
        result = service.evaluate(agent.id, "delete_record", "salesforce")

        assert result.allowed is False
        assert result.pending is True
        assert result.reason == ReasonCode.APPROVAL_REQUIRED
        assert result.decision.status == DecisionStatus.PENDING

    def test_hitl_for_approval_required_tier(self, service, make_agent):
        agent = make_agent(actions=["update_record"], systems=["salesforce"], data_sensitivity="PII")
        assert agent.tier == "A5"

        result = service.evaluate(agent.id, "retrieve", "kb")
        assert result.control_mode == ControlMode.HITL
        assert result.outcome == DecisionOutcome.PENDING

    def test_sandbox_only_tier_denied_outside_sandbox(self, service, make_agent):
        agent = make_agent(actions=["delete_record"], systems=["salesforce"])
        assert agent.tier == "A6"

        result = service.evaluate(agent.id, "delete_record", "salesforce")

        assert result.allowed is False
        assert result.outcome == DecisionOutcome.DENY
        assert result.reason == ReasonCode.SANDBOX_ONLY
        assert result.decision.status == DecisionStatus.DENIED

    def test_sandbox_only_tier_in_sandbox(self, service, make_agent):
        agent = make_agent(actions=["delete_record"], systems=["salesforce"], environment="sandbox")

        result = service.evaluate(agent.id, "delete_record", "salesforce")
        assert result.reason == ReasonCode.APPROVAL_REQUIRED
        assert result.decision.environment == "sandbox"

    def test_environment_argument_overrides_agent_environment(self, service, make_agent):
        agent = make_agent(actions=["delete_record"], systems=["salesforce"])
        result = service.evaluate(agent.id, "delete_record", "salesforce", environment="test")
        assert result.reason == ReasonCode.APPROVAL_REQUIRED

    def test_one_event_per_evaluation(self, service, make_agent):
        agent = make_agent()
        length = len(service.ledger)
        result = service.evaluate(agent.id, "retrieve", "kb")

        assert len(service.ledger) == length + 1
        event = service.ledger.latest_event()
        assert event.type == LedgerEventType.DECISION_CREATED.value
        assert event.payload["decision"]["id"] == result.decision.id
        assert event.payload["outcome"] == "ALLOW"

    def test_call_intent_recorded(self, service, make_agent):
        agent = make_agent()
        call_intent = Intent(actions=["search"], systems=["kb"])
        result = service.evaluate(agent.id, "search", "kb", intent=call_intent)
        assert result.decision.intent == call_intent


class TestHumanDecisions:
    """Test approving and denying pending decisions."""

    @pytest.fixture
    def pending(self, service, make_agent):
        agent = make_agent()
        return service.evaluate(agent.id, "delete_record", "salesforce").decision

    def test_approve(self, service, pending, clock):
        approved = service.approve(pending.id, "carol", "checked the ticket")

        assert approved.status == DecisionStatus.APPROVED
        assert approved.allowed is True
        assert approved.reason == ReasonCode.HUMAN_APPROVED
        assert approved.decided_by == hash_identity("carol")
        assert approved.decided_at == clock()
        assert approved.decision_note == "checked the ticket"

    def test_deny(self, service, pending):
        denied = service.deny(pending.id, "carol", "wrong account")
        assert denied.status == DecisionStatus.DENIED
        assert denied.reason == ReasonCode.HUMAN_DENIED
        assert denied.allowed is False

    def test_decisions_are_final(self, service, pending):
        service.deny(pending.id, "carol")

        with pytest.raises(StateConflictError) as exc_info:
            service.approve(pending.id, "dave")
        assert exc_info.value.details["current_state"] == "DENIED"

        with pytest.raises(StateConflictError):
            service.deny(pending.id, "dave")

        rejected = service.ledger.latest_event(LedgerEventType.DECISION_TRANSITION_REJECTED)
        assert rejected.payload["decision_id"] == pending.id
        assert rejected.payload["actor"] == hash_identity("dave")

    def test_auto_decision_cannot_be_approved(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "retrieve", "kb").decision
        with pytest.raises(StateConflictError):
            service.approve(decision.id, "carol")

    def test_unknown_decision(self, service):
        with pytest.raises(NotFoundError):
            service.approve("dec_missing", "carol")
        with pytest.raises(NotFoundError):
            service.get_decision("dec_missing")


class TestExecution:
    """Test executing approved decisions."""

    def test_execute_auto_decision(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "retrieve", "salesforce").decision

        result = service.execute(decision.id, {"record": "001"})

        assert result.allowed is True
        assert result.decision.status == DecisionStatus.EXECUTED
        assert result.outcome.success is True
        assert result.outcome.simulated is True

        event = service.ledger.latest_event(LedgerEventType.EXECUTION)
        assert event.payload["reason"] == "executed"
        assert event.payload["result"]["system"] == "salesforce"

    def test_pending_cannot_execute(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "delete_record", "salesforce").decision
        with pytest.raises(StateConflictError):
            service.execute(decision.id)

    def test_execute_twice_conflicts(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "retrieve", "kb").decision
        service.execute(decision.id)
        with pytest.raises(StateConflictError):
            service.execute(decision.id)

    def test_paused_agent_blocks_execution(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "retrieve", "kb").decision
        service.pause_agent(agent.id, "ops")

        result = service.execute(decision.id)

        assert result.allowed is False
        assert result.reason == ReasonCode.AGENT_PAUSED
        assert service.get_decision(decision.id).status == DecisionStatus.APPROVED
        assert service.ledger.latest_event().type == LedgerEventType.EXECUTION_BLOCKED.value

    def test_adapter_failure_is_recorded(self, service, make_agent):
        service.decisions.adapters = AdapterRegistry(fallback=RaisingAdapter())
        agent = make_agent()
        decision = service.evaluate(agent.id, "retrieve", "salesforce").decision

        result = service.execute(decision.id)

        assert result.allowed is True
        assert result.outcome.success is False
        assert "unreachable" in result.outcome.error
        assert result.decision.status == DecisionStatus.EXECUTED
        assert service.ledger.latest_event().payload["reason"] == "execution_failed"

    def test_long_action_name_survives_replay_and_reaches_adapter(self, service, make_agent):
        adapter = RecordingAdapter()
        service.decisions.adapters = AdapterRegistry(fallback=adapter)
        agent = make_agent()
        long_action = "retrieve_customer_account_history_v2"
        long_target = "customer_data_warehouse_replica_eu_west"

        decision = service.evaluate(agent.id, long_action, long_target).decision
        assert decision.action == long_action
        assert service.get_decision(decision.id).action == long_action
        assert service.get_decision(decision.id).target == long_target

        service.execute(decision.id, {"record": "001"})

        assert adapter.calls == [(long_target, long_action, {"record": "001"})]
        executed = service.ledger.latest_event(LedgerEventType.EXECUTION)
        assert executed.payload["decision"]["action"] == long_action


class TestListing:
    """Test decision listings."""

    def test_list_filters(self, service, make_agent, clock):
        one = make_agent(name="one")
        two = make_agent(name="two")
        auto = service.evaluate(one.id, "retrieve", "kb").decision
        clock.advance(seconds=1)
        pending = service.evaluate(two.id, "delete_record", "salesforce").decision

        assert [d.id for d in service.list_decisions()] == [pending.id, auto.id]
        assert [d.id for d in service.list_decisions(agent_id=one.id)] == [auto.id]
        assert [d.id for d in service.list_decisions(status=DecisionStatus.PENDING)] == [pending.id]

    def test_snapshot_follows_lifecycle(self, service, make_agent):
        agent = make_agent()
        decision = service.evaluate(agent.id, "delete_record", "salesforce").decision
        service.approve(decision.id, "carol")
        service.execute(decision.id)

        assert service.list_decisions(agent.id)[0].status == DecisionStatus.EXECUTED

    def test_snapshot_failure_does_not_fail_committed_decision(self, service, storage, make_agent, caplog):
        agent = make_agent()

        with patch.object(storage, "set", side_effect=StorageError("disk full")):
            with caplog.at_level("ERROR"):
                result = service.evaluate(agent.id, "retrieve", "kb")

        assert result.allowed is True
        assert service.get_decision(result.decision.id).status == DecisionStatus.APPROVED
        assert "operator_alert" in caplog.text
        assert len(service.ledger.events(LedgerEventType.DECISION_CREATED)) == 1
