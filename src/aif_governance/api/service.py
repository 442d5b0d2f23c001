"""Governance Service - the control plane's single entry point.

This service wires storage, the ledger, the policy engine, the registry,
overrides and the decision engine together, providing a clean interface
for the API layer and for in-process callers.

Design principles:
- Storage is injected, never global
- A broken policy pack fails construction, not a request
- Every public operation is recorded in the ledger by the component it
  delegates to
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from aif_governance.common.config import Config, StorageType, get_config
from aif_governance.common.exceptions import LedgerIntegrityError, NotFoundError, StorageError
from aif_governance.governance.adapters import AdapterRegistry
from aif_governance.governance.audit.ledger import Ledger, resolve_dotted
from aif_governance.governance.audit.storage import (
    DynamoDBStorage,
    FileStorage,
    InMemoryStorage,
    Storage,
)
from aif_governance.governance.decisions import DecisionEngine
from aif_governance.governance.intent import SignalExtractor, complete_intent
from aif_governance.governance.override import OverrideManager
from aif_governance.governance.policies.engine import PolicyEngine
from aif_governance.governance.policies.loader import FilePolicySource, PolicySource
from aif_governance.governance.redact import AuditRedactor
from aif_governance.governance.registry import AgentRegistry, allowed_tools_for
from aif_governance.governance.schemas import (
    Agent,
    AgentStatus,
    Decision,
    DecisionStatus,
    EvaluationResult,
    ExecutionResult,
    Intent,
    LedgerEvent,
    OverrideRecord,
    utc_now,
)

logger = logging.getLogger(__name__)

# payload paths that carry the agent / decision a ledger event is about
_AGENT_PATHS = ("agent_id", "agent.id", "decision.agent_id", "override.agent_id")
_DECISION_PATHS = ("decision_id", "decision.id")


def build_storage(config: Config) -> Storage:
    """Create the storage backend selected by configuration."""
    if config.storage_type == StorageType.FILE:
        return FileStorage(str(config.storage_dir))
    if config.storage_type == StorageType.DYNAMODB:
        return DynamoDBStorage(table_name=config.dynamodb_table, region=config.aws_region)
    return InMemoryStorage()


def _matches_any(payload: Dict[str, Any], paths, value: str) -> bool:
    return any(resolve_dotted(payload, path) == value for path in paths)


class GovernanceService:
    """Facade over the governance components.

    Error Handling:
    - Gate denials for agent state come back as EvaluationResult
    - Caller errors raise ValidationError / NotFoundError / StateConflictError
    - Storage failures on state-bearing writes raise StorageError
    - An inconsistent policy pack raises PolicyError here, at construction
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        storage: Optional[Storage] = None,
        policy_source: Optional[PolicySource] = None,
        adapters: Optional[AdapterRegistry] = None,
        extractor: Optional[SignalExtractor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the service.

        Args:
            config: Configuration. Global config if not provided.
            storage: Storage backend. Built from config if not provided.
            policy_source: Policy pack source. The configured file if not provided.
            adapters: Execution adapters. Simulated adapters if not provided.
            extractor: Signal extractor for problem statements.
            clock: Time source shared by every component.
        """
        self.config = config or get_config()
        self.storage = storage or build_storage(self.config)
        self.extractor = extractor
        self.policy = PolicyEngine(
            policy_source or FilePolicySource(self.config.resolved_policy_file)
        )
        self.ledger = Ledger(
            self.storage,
            stream=self.config.ledger_stream,
            redactor=AuditRedactor(),
            clock=clock,
        )
        self.registry = AgentRegistry(self.ledger, self.policy, extractor=extractor, clock=clock)
        self.overrides = OverrideManager(
            self.ledger,
            self.policy,
            self.registry,
            clock=clock,
            default_ttl_minutes=self.config.default_override_ttl_minutes,
        )
        self.decisions = DecisionEngine(
            self.ledger,
            self.policy,
            self.registry,
            self.overrides,
            adapters=adapters,
            clock=clock,
        )
        logger.info(
            f"GovernanceService ready (policy {self.policy.policy_version}, "
            f"storage {type(self.storage).__name__}, stream {self.config.ledger_stream})"
        )

    def shutdown(self) -> None:
        logger.info("GovernanceService shutdown complete")

    # ========== AGENTS ==========

    def register_agent(
        self,
        name: str,
        owner: str,
        intent: Optional[Intent] = None,
        problem_statement: Optional[str] = None,
        override_tier: Optional[str] = None,
        environment: str = "production",
        agent_id: Optional[str] = None,
    ) -> Agent:
        return self.registry.register(
            name=name,
            owner=owner,
            intent=intent,
            problem_statement=problem_statement,
            override_tier=override_tier,
            environment=environment,
            agent_id=agent_id,
        )

    def approve_agent(self, agent_id: str, approved_by: str, notes: Optional[str] = None) -> Agent:
        return self.registry.approve(agent_id, approved_by, notes)

    def reject_agent(self, agent_id: str, rejected_by: str, reason: Optional[str] = None) -> Agent:
        return self.registry.reject(agent_id, rejected_by, reason)

    def pause_agent(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self.registry.pause(agent_id, actor, reason)

    def resume_agent(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self.registry.resume(agent_id, actor, reason)

    def kill_agent(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self.registry.kill(agent_id, actor, reason)

    def terminate_agent(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self.registry.terminate(agent_id, actor, reason)

    def get_agent(self, agent_id: str) -> Agent:
        return self.registry.require(agent_id)

    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        return self.registry.list_agents(status)

    # ========== DECISIONS ==========

    def evaluate(
        self,
        agent_id: str,
        action: str,
        target: str,
        intent: Optional[Intent] = None,
        environment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> EvaluationResult:
        return self.decisions.evaluate(
            agent_id, action, target, intent=intent, environment=environment, actor=actor
        )

    def approve(self, decision_id: str, approver_id: str, note: Optional[str] = None) -> Decision:
        return self.decisions.approve(decision_id, approver_id, note)

    def deny(self, decision_id: str, approver_id: str, reason: Optional[str] = None) -> Decision:
        return self.decisions.deny(decision_id, approver_id, reason)

    def execute(
        self,
        decision_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> ExecutionResult:
        return self.decisions.execute(decision_id, payload, actor)

    def get_decision(self, decision_id: str) -> Decision:
        decision = self.decisions.get(decision_id)
        if decision is None:
            raise NotFoundError(f"Decision not found: {decision_id}", entity="decision", entity_id=decision_id)
        return decision

    def list_decisions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[DecisionStatus] = None,
    ) -> List[Decision]:
        return self.decisions.list_decisions(agent_id, status)

    # ========== OVERRIDES ==========

    def request_override(self, agent_id: str, requested_tier: str, requested_by: str, reason: str = "") -> OverrideRecord:
        return self.overrides.request(agent_id, requested_tier, requested_by, reason)

    def approve_override(self, override_id: str, approved_by: str, ttl_minutes: Optional[int] = None) -> OverrideRecord:
        return self.overrides.approve(override_id, approved_by, ttl_minutes)

    def reject_override(self, override_id: str, rejected_by: str, reason: Optional[str] = None) -> OverrideRecord:
        return self.overrides.reject(override_id, rejected_by, reason)

    def revoke_override(self, override_id: str, revoked_by: str) -> OverrideRecord:
        return self.overrides.revoke(override_id, revoked_by)

    def active_override(self, agent_id: str) -> Optional[OverrideRecord]:
        self.registry.require(agent_id)
        return self.overrides.active_override_for(agent_id)

    def list_overrides(self, agent_id: Optional[str] = None) -> List[OverrideRecord]:
        return self.overrides.list_overrides(agent_id)

    # ========== AUDIT ==========

    def get_audit_trail(
        self,
        event_type: Optional[str] = None,
        agent_id: Optional[str] = None,
        decision_id: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[LedgerEvent]:
        """Ledger events, newest first, filtered by type, agent and decision."""

        def predicate(payload: Dict[str, Any]) -> bool:
            if agent_id is not None and not _matches_any(payload, _AGENT_PATHS, agent_id):
                return False
            if decision_id is not None and not _matches_any(payload, _DECISION_PATHS, decision_id):
                return False
            return True

        return self.ledger.events(event_type, predicate, limit=limit, newest_first=True)

    def verify_ledger(self) -> Dict[str, Any]:
        """Recompute the hash chain. Integrity failures are reported, not raised."""
        length, head_hash = self.ledger.head()
        try:
            self.ledger.verify_integrity()
        except LedgerIntegrityError as e:
            logger.error(f"operator_alert: ledger integrity check failed: {e.message}")
            return {"valid": False, "length": length, "head_hash": head_hash, "error": e.message}
        return {"valid": True, "length": length, "head_hash": head_hash, "error": None}

    # ========== CLASSIFICATION ==========

    def classify(
        self,
        intent: Optional[Intent] = None,
        problem_statement: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Preview the tier and controls registration would freeze. Writes nothing."""
        intent = complete_intent(intent, problem_statement, self.extractor)
        tiering = self.policy.resolve_tier(intent)
        return {
            "tier": tiering.tier,
            "matched_rule_ids": tiering.matched_rule_ids,
            "reasons": tiering.reasons,
            "controls": self.policy.controls_for_tier(tiering.tier),
            "allowed_tools": allowed_tools_for(tiering.tier, self.policy.pack),
            "policy_version": self.policy.policy_version,
        }

    # ========== HEALTH ==========

    def health_check(self) -> Dict[str, Any]:
        """Service health: policy loaded, storage reachable, ledger readable."""
        storage_ok = self.storage.health_check()
        try:
            length, head_hash = self.ledger.head()
            ledger_ok = True
        except StorageError as e:
            logger.error(f"Ledger unreadable during health check: {e}")
            length, head_hash, ledger_ok = 0, "", False

        return {
            "status": "healthy" if storage_ok and ledger_ok else "degraded",
            "policy_version": self.policy.policy_version,
            "tiers": list(self.policy.pack.tier_order),
            "storage": type(self.storage).__name__,
            "storage_ok": storage_ok,
            "ledger_ok": ledger_ok,
            "ledger_length": length,
            "ledger_head": head_hash,
        }
