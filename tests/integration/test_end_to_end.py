"""Integration tests for the governance control plane.

End-to-end scenarios: registration through gating, human decisions,
execution, concurrent ledger writers and replay from durable storage.
"""

import threading

import pytest

from aif_governance.api.service import GovernanceService
from aif_governance.common.exceptions import StateConflictError
from aif_governance.governance.audit.storage import FileStorage
from aif_governance.governance.policies.loader import FilePolicySource
from aif_governance.governance.schemas import (
    AgentStatus,
    DecisionStatus,
    Intent,
    LedgerEventType,
    ReasonCode,
)


@pytest.fixture
def file_service(temp_dir, policy_file, config, clock):
    """Service over file storage and the YAML test pack."""

    def _make():
        return GovernanceService(
            config=config,
            storage=FileStorage(f"{temp_dir}/data"),
            policy_source=FilePolicySource(policy_file),
            clock=clock,
        )

    return _make


class TestScenarios:
    """The reference scenarios."""

    def test_write_with_pii_lands_in_highest_matching_tier(self, service):
        """Scenario A: both rules match and the higher tier wins."""
        agent = service.register_agent(
            name="Claims assistant",
            owner="alice",
            intent=Intent(
                actions=["update_record"],
                systems=["salesforce"],
                data_sensitivity="PII",
                cross_border=False,
            ),
        )

        assert agent.tier == "A5"
        assert set(agent.matched_rule_ids) == {"R-WRITE", "R-PII"}
        assert agent.controls.approval_required is True

    def test_empty_problem_statement_gets_default_low_tier(self, service):
        """Scenario B: no signals means the default intent."""
        agent = service.register_agent(name="Helper", owner="alice", problem_statement="")

        assert agent.intent == Intent(actions=["retrieve"], systems=["kb"], data_sensitivity="INTERNAL")
        assert agent.tier == "A1"

    def test_paused_agent_denied_with_single_event(self, service, make_agent):
        """Scenario C: a paused agent is denied and exactly one event is written."""
        agent = make_agent()
        service.pause_agent(agent.id, "ops")
        before = len(service.ledger)

        result = service.evaluate(agent.id, "retrieve", "kb")

        assert result.allowed is False
        assert result.reason == ReasonCode.AGENT_PAUSED
        assert len(service.ledger) == before + 1

    def test_hitl_approve_then_execute(self, service, make_agent):
        """Scenario D: approve, execute, and a late deny is a conflict."""
        agent = make_agent(actions=["update_record"], systems=["salesforce"], data_sensitivity="PII")

        pending = service.evaluate(agent.id, "update_record", "salesforce")
        assert pending.decision.status == DecisionStatus.PENDING

        service.approve(pending.decision.id, "carol")
        executed = service.execute(pending.decision.id)
        assert executed.decision.status == DecisionStatus.EXECUTED

        with pytest.raises(StateConflictError):
            service.deny(pending.decision.id, "dave")

        types = [e.type for e in service.get_audit_trail(decision_id=pending.decision.id)]
        assert types == ["execution", "decision_status_changed", "decision_created"]

    def test_concurrent_writers_never_fork_and_replay_matches(self, file_service):
        """Scenario E: parallel services on one store keep a single chain."""
        services = [file_service() for _ in range(3)]
        agent = services[0].register_agent(
            name="Helper", owner="alice", intent=Intent(actions=["retrieve"], systems=["kb"])
        )
        services[0].approve_agent(agent.id, "bob")

        for svc in services:
            svc.ledger.max_retries = 200

        errors = []

        def worker(svc):
            for _ in range(10):
                try:
                    svc.evaluate(agent.id, "retrieve", "kb")
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(svc,)) for svc in services]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

        fresh = file_service()
        events = fresh.ledger.events(newest_first=False)
        prev_hashes = [e.prev_hash for e in events]
        assert len(prev_hashes) == len(set(prev_hashes)) == 32
        assert fresh.verify_ledger()["valid"] is True

        assert len(fresh.list_decisions(agent.id)) == 30
        assert fresh.get_agent(agent.id) == services[0].get_agent(agent.id)


class TestDurableReplay:
    """State survives a restart on file storage."""

    def test_state_replayed_after_restart(self, file_service, clock):
        first = file_service()
        agent = first.register_agent(
            name="Ticket bot",
            owner="alice",
            intent=Intent(actions=["create_record"], systems=["servicenow"]),
        )
        first.approve_agent(agent.id, "bob")
        override = first.request_override(agent.id, "A5", "alice")
        first.approve_override(override.id, "bob", ttl_minutes=30)
        decision = first.evaluate(agent.id, "create_record", "servicenow").decision
        first.pause_agent(agent.id, "ops")

        second = file_service()

        assert second.get_agent(agent.id).status == AgentStatus.PAUSED
        assert second.active_override(agent.id).id == override.id
        assert second.get_decision(decision.id).status == DecisionStatus.PENDING
        assert second.verify_ledger()["valid"] is True

        clock.advance(minutes=31)
        assert second.active_override(agent.id) is None

    def test_audit_trail_spans_restart(self, file_service):
        first = file_service()
        agent = first.register_agent(name="Helper", owner="alice")

        second = file_service()
        second.approve_agent(agent.id, "bob")

        trail = first.get_audit_trail(agent_id=agent.id)
        assert [e.type for e in trail] == [
            LedgerEventType.AGENT_STATUS_CHANGED.value,
            LedgerEventType.AGENT_REGISTERED.value,
        ]
