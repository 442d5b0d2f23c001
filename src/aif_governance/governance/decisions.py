"""Decision engine - gates agent actions and drives the decision lifecycle.

Gate order for ``evaluate``:

1. agent must exist
2. agent must not be killed or terminated
3. agent must not be paused
4. agent must be approved
5. effective tier = active override tier, else the agent's frozen tier
6. controls for that tier
7. control mode: HITL if approval is required or the action is restricted,
   HOTL for write actions, AUTO otherwise
8. sandbox_only outside a sandbox environment is a hard deny

Each evaluation appends exactly one ledger event. Early denials write a
``gate_denied`` event and no decision; everything past step 4 writes one
``decision_created`` event.

Lifecycle: PENDING -> APPROVED | DENIED, APPROVED -> EXECUTED.
"""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from aif_governance.common.exceptions import NotFoundError, StateConflictError, ValidationError
from aif_governance.governance.adapters import AdapterRegistry
from aif_governance.governance.audit.ledger import Ledger
from aif_governance.governance.override import OverrideManager
from aif_governance.governance.policies.engine import PolicyEngine
from aif_governance.governance.redact import hash_identity
from aif_governance.governance.registry import AgentRegistry
from aif_governance.governance.schemas import (
    Agent,
    AgentStatus,
    ControlMode,
    Decision,
    DecisionOutcome,
    DecisionStatus,
    EvaluationResult,
    ExecutionResult,
    Intent,
    LedgerEventType,
    ReasonCode,
    utc_now,
)

logger = logging.getLogger(__name__)

DECISION_EVENTS = (
    LedgerEventType.DECISION_CREATED,
    LedgerEventType.DECISION_STATUS_CHANGED,
    LedgerEventType.EXECUTION,
)


def agent_block_reason(agent: Optional[Agent]) -> Optional[ReasonCode]:
    """Why an agent may not act right now, or None if it may."""
    if agent is None:
        return ReasonCode.AGENT_NOT_REGISTERED
    if agent.status == AgentStatus.KILLED:
        return ReasonCode.AGENT_KILLED
    if agent.status == AgentStatus.TERMINATED:
        return ReasonCode.AGENT_TERMINATED
    if agent.status == AgentStatus.PAUSED:
        return ReasonCode.AGENT_PAUSED
    if agent.status != AgentStatus.APPROVED or not agent.approved:
        return ReasonCode.AGENT_NOT_APPROVED
    return None


class DecisionEngine:
    """Evaluates, approves, denies and executes gated actions."""

    SNAPSHOT_PREFIX = "decisions/"

    def __init__(
        self,
        ledger: Ledger,
        policy: PolicyEngine,
        registry: AgentRegistry,
        overrides: OverrideManager,
        adapters: Optional[AdapterRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.policy = policy
        self.registry = registry
        self.overrides = overrides
        self.adapters = adapters or AdapterRegistry.simulated()
        self.clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _read(self, decision_id: str) -> Optional[Decision]:
        payload = self.ledger.latest_by_field(DECISION_EVENTS, "decision.id", decision_id)
        if payload is None:
            return None
        return Decision.model_validate(payload["decision"])

    def _persist(
        self,
        event_type: LedgerEventType,
        decision: Decision,
        outcome: DecisionOutcome,
        reason: str,
        idempotency_key: Optional[str] = None,
        **extra: Any,
    ) -> Decision:
        event = self.ledger.record(
            event_type,
            {
                "decision": decision.model_dump(mode="json"),
                "outcome": outcome.value,
                "reason": reason,
                **extra,
            },
            idempotency_key=idempotency_key,
        )
        stored = Decision.model_validate(event.payload["decision"])
        self.ledger.put_snapshot(f"{self.SNAPSHOT_PREFIX}{stored.id}", stored.model_dump_json())
        return stored

    def _refuse(self, decision_id: str, actor: str, target: DecisionStatus, current: Optional[Decision]):
        self.ledger.audit(
            LedgerEventType.DECISION_TRANSITION_REJECTED,
            {
                "decision_id": decision_id,
                "from_status": current.status.value if current else None,
                "to_status": target.value,
                "actor": hash_identity(actor),
                "error": "not_found" if current is None else "invalid_transition",
            },
        )
        if current is None:
            raise NotFoundError(f"Decision not found: {decision_id}", entity="decision", entity_id=decision_id)
        raise StateConflictError(
            f"Decision {decision_id} is {current.status.value}; cannot move to {target.value}",
            current_state=current.status.value,
        )

    def get(self, decision_id: str) -> Optional[Decision]:
        return self._read(decision_id)

    def list_decisions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[DecisionStatus] = None,
    ) -> List[Decision]:
        """Decisions from the snapshot projection, newest first."""
        decisions = []
        for key in self.ledger.storage.list(self.SNAPSHOT_PREFIX):
            raw = self.ledger.storage.get(key)
            if raw is None:
                continue
            decision = Decision.model_validate(json.loads(raw))
            if agent_id is not None and decision.agent_id != agent_id:
                continue
            if status is not None and decision.status != status:
                continue
            decisions.append(decision)
        return sorted(decisions, key=lambda d: d.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def _gate_denied(
        self,
        agent_id: str,
        action: str,
        target: str,
        reason: ReasonCode,
        actor: Optional[str],
    ) -> EvaluationResult:
        self.ledger.audit(
            LedgerEventType.GATE_DENIED,
            {
                "agent_id": agent_id,
                "action": action,
                "target": target,
                "outcome": DecisionOutcome.DENY.value,
                "reason": reason.value,
                "actor": hash_identity(actor) if actor else None,
            },
        )
        logger.info(f"Gate denied {action} on {target} for {agent_id}: {reason.value}")
        return EvaluationResult(allowed=False, outcome=DecisionOutcome.DENY, reason=reason)

    def evaluate(
        self,
        agent_id: str,
        action: str,
        target: str,
        intent: Optional[Intent] = None,
        environment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> EvaluationResult:
        """Gate one action.

        Args:
            agent_id: Acting agent
            action: Verb, e.g. ``update_record``
            target: Target system, e.g. ``salesforce``
            intent: Intent of this specific call, recorded on the decision
            environment: Execution environment; defaults to the agent's
            actor: Caller identity, pseudonymized in the ledger

        Returns:
            EvaluationResult. Agent-state denials are results, not exceptions.

        Raises:
            ValidationError: empty action or target
            StorageError: the decision could not be recorded
        """
        action = (action or "").strip().lower()
        target = (target or "").strip().lower()
        if not action or not target:
            self.ledger.audit(
                LedgerEventType.GATE_DENIED,
                {
                    "agent_id": agent_id,
                    "action": action,
                    "target": target,
                    "outcome": DecisionOutcome.DENY.value,
                    "reason": "invalid_request",
                },
            )
            raise ValidationError("action and target are required")

        with self._lock:
            agent = self.registry.get(agent_id)
            blocked = agent_block_reason(agent)
            if blocked is not None:
                return self._gate_denied(agent_id, action, target, blocked, actor)

            override = self.overrides.active_override_for(agent_id)
            tier = override.requested_tier if override else agent.tier
            controls = self.policy.controls_for_tier(tier)
            mode = self.policy.control_mode_for(action, controls)
            env = environment or agent.environment

            rationale = [
                f"Tier {tier} from override {override.id}" if override
                else f"Tier {tier} frozen at registration ({agent.tier_source.value})",
                f"Control mode {mode.value} for action {action}",
            ]

            if controls.sandbox_only and not self.policy.is_sandbox(env):
                allowed, status, reason, outcome = (
                    False, DecisionStatus.DENIED, ReasonCode.SANDBOX_ONLY, DecisionOutcome.DENY
                )
                rationale.append(f"Tier {tier} is sandbox-only; environment {env} is not a sandbox")
            elif mode == ControlMode.HITL:
                allowed, status, reason, outcome = (
                    False, DecisionStatus.PENDING, ReasonCode.APPROVAL_REQUIRED, DecisionOutcome.PENDING
                )
                rationale.append("Human approval required before execution")
            else:
                reason = ReasonCode.ALLOWED_HOTL if mode == ControlMode.HOTL else ReasonCode.ALLOWED_AUTO
                allowed, status, outcome = True, DecisionStatus.APPROVED, DecisionOutcome.ALLOW

            decision = Decision(
                agent_id=agent_id,
                action=action,
                target=target,
                tier=tier,
                control_mode=mode,
                allowed=allowed,
                status=status,
                reason=reason,
                rationale=rationale,
                policy_version=self.policy.policy_version,
                matched_rule_ids=agent.matched_rule_ids,
                environment=env,
                intent=intent or agent.intent,
                override_id=override.id if override else None,
                created_at=self.clock(),
            )
            decision = self._persist(
                LedgerEventType.DECISION_CREATED,
                decision,
                outcome,
                reason.value,
                idempotency_key=f"decision_created:{decision.id}",
                actor=hash_identity(actor) if actor else None,
            )

        logger.info(
            f"Decision {decision.id}: {outcome.value} {action} on {target} "
            f"for {agent_id} (tier {tier}, {mode.value})"
        )
        return EvaluationResult(
            allowed=allowed,
            outcome=outcome,
            reason=reason,
            decision=decision,
            tier=tier,
            control_mode=mode,
            rationale=rationale,
        )

    # ------------------------------------------------------------------
    # Human decisions
    # ------------------------------------------------------------------

    def approve(self, decision_id: str, approver_id: str, note: Optional[str] = None) -> Decision:
        """Approve a pending decision.

        Raises:
            NotFoundError: unknown decision
            StateConflictError: decision is not PENDING
        """
        with self._lock:
            current = self._read(decision_id)
            if current is None or current.status != DecisionStatus.PENDING:
                self._refuse(decision_id, approver_id, DecisionStatus.APPROVED, current)

            updated = current.model_copy(update={
                "status": DecisionStatus.APPROVED,
                "allowed": True,
                "reason": ReasonCode.HUMAN_APPROVED,
                "decided_by": hash_identity(approver_id),
                "decided_at": self.clock(),
                "decision_note": note,
            })
            updated = self._persist(
                LedgerEventType.DECISION_STATUS_CHANGED,
                updated,
                DecisionOutcome.ALLOW,
                ReasonCode.HUMAN_APPROVED.value,
                from_status=current.status.value,
                to_status=DecisionStatus.APPROVED.value,
            )
        logger.info(f"Decision {decision_id} approved")
        return updated

    def deny(self, decision_id: str, approver_id: str, reason: Optional[str] = None) -> Decision:
        """Deny a pending decision.

        Raises:
            NotFoundError: unknown decision
            StateConflictError: decision is not PENDING
        """
        with self._lock:
            current = self._read(decision_id)
            if current is None or current.status != DecisionStatus.PENDING:
                self._refuse(decision_id, approver_id, DecisionStatus.DENIED, current)

            updated = current.model_copy(update={
                "status": DecisionStatus.DENIED,
                "allowed": False,
                "reason": ReasonCode.HUMAN_DENIED,
                "decided_by": hash_identity(approver_id),
                "decided_at": self.clock(),
                "decision_note": reason,
            })
            updated = self._persist(
                LedgerEventType.DECISION_STATUS_CHANGED,
                updated,
                DecisionOutcome.DENY,
                ReasonCode.HUMAN_DENIED.value,
                from_status=current.status.value,
                to_status=DecisionStatus.DENIED.value,
            )
        logger.info(f"Decision {decision_id} denied")
        return updated

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        decision_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> ExecutionResult:
        """Run an approved decision through its adapter.

        The agent is re-checked first; a paused, killed or terminated agent
        gets a DENY result and the decision stays APPROVED. Otherwise the
        decision is marked EXECUTED whether or not the adapter succeeds.

        Raises:
            NotFoundError: unknown decision
            StateConflictError: decision is not APPROVED
        """
        with self._lock:
            current = self._read(decision_id)
            if current is None or current.status != DecisionStatus.APPROVED:
                self._refuse(decision_id, actor, DecisionStatus.EXECUTED, current)

            blocked = agent_block_reason(self.registry.get(current.agent_id))
            if blocked is not None:
                self.ledger.audit(
                    LedgerEventType.EXECUTION_BLOCKED,
                    {
                        "decision_id": decision_id,
                        "agent_id": current.agent_id,
                        "outcome": DecisionOutcome.DENY.value,
                        "reason": blocked.value,
                        "actor": hash_identity(actor),
                    },
                )
                logger.info(f"Execution of {decision_id} blocked: {blocked.value}")
                return ExecutionResult(allowed=False, reason=blocked, decision=current)

            outcome = self.adapters.execute(current.target, current.action, payload or {})

            updated = current.model_copy(update={
                "status": DecisionStatus.EXECUTED,
                "executed_at": self.clock(),
            })
            updated = self._persist(
                LedgerEventType.EXECUTION,
                updated,
                DecisionOutcome.ALLOW,
                "executed" if outcome.success else "execution_failed",
                idempotency_key=f"execution:{decision_id}",
                result=outcome.model_dump(mode="json"),
                actor=hash_identity(actor),
            )

        logger.info(f"Decision {decision_id} executed (success={outcome.success})")
        return ExecutionResult(allowed=True, decision=updated, outcome=outcome)
