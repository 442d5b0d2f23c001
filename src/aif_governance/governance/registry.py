"""Agent registry - registration, approval and lifecycle of governed agents.

An agent's tier, controls and policy version are frozen when it registers.
Every lifecycle change is a ledger event carrying the full agent record, so
the newest ``agent_registered``/``agent_status_changed`` event for an id is
the agent's current state. A keyed snapshot (``agents/<id>``) is written
alongside for listing.
"""

import json
import logging
import re
import threading
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from aif_governance.common.exceptions import NotFoundError, StateConflictError, ValidationError
from aif_governance.governance.audit.ledger import Ledger
from aif_governance.governance.intent import SignalExtractor, complete_intent
from aif_governance.governance.policies.engine import PolicyEngine
from aif_governance.governance.redact import hash_identity
from aif_governance.governance.schemas import (
    Agent,
    AgentStatus,
    Intent,
    LedgerEventType,
    PolicyPack,
    TierSource,
    utc_now,
)

logger = logging.getLogger(__name__)

AGENT_EVENTS = (LedgerEventType.AGENT_REGISTERED, LedgerEventType.AGENT_STATUS_CHANGED)
_AGENT_ID = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")

# status -> states it may move to
_TRANSITIONS: Dict[AgentStatus, FrozenSet[AgentStatus]] = {
    AgentStatus.REQUESTED: frozenset({AgentStatus.APPROVED, AgentStatus.TERMINATED, AgentStatus.KILLED}),
    AgentStatus.APPROVED: frozenset({AgentStatus.PAUSED, AgentStatus.TERMINATED, AgentStatus.KILLED}),
    AgentStatus.PAUSED: frozenset({AgentStatus.APPROVED, AgentStatus.TERMINATED, AgentStatus.KILLED}),
    AgentStatus.KILLED: frozenset(),
    AgentStatus.TERMINATED: frozenset(),
}


def allowed_tools_for(tier: str, pack: PolicyPack) -> List[str]:
    """Tool grants for a tier. The two lowest tiers are read-only."""
    if pack.rank(tier) < 2:
        return ["read_only"]
    return ["read_only", "write_via_gateway"]


class AgentRegistry:
    """Ledger-backed registry of agents."""

    SNAPSHOT_PREFIX = "agents/"

    def __init__(
        self,
        ledger: Ledger,
        policy: PolicyEngine,
        extractor: Optional[SignalExtractor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.policy = policy
        self.extractor = extractor
        self.clock = clock
        self._lock = threading.Lock()

    def _snapshot(self, agent: Agent) -> None:
        self.ledger.put_snapshot(f"{self.SNAPSHOT_PREFIX}{agent.id}", agent.model_dump_json())

    def _reject_registration(self, agent_id: Optional[str], owner: str, error: str, exc: ValidationError):
        self.ledger.audit(
            LedgerEventType.AGENT_REGISTRATION_REJECTED,
            {"agent_id": agent_id, "actor": hash_identity(owner), "error": error},
        )
        raise exc

    def register(
        self,
        name: str,
        owner: str,
        intent: Optional[Intent] = None,
        problem_statement: Optional[str] = None,
        override_tier: Optional[str] = None,
        environment: str = "production",
        agent_id: Optional[str] = None,
    ) -> Agent:
        """Register an agent and freeze its tier and controls.

        Args:
            name: Display name
            owner: Requesting user
            intent: Structured intent; takes precedence over the problem statement
            problem_statement: Free text used to infer an intent
            override_tier: Tier requested at registration instead of the resolved one
            environment: Deployment environment
            agent_id: Externally supplied id

        Returns:
            The new agent in ``requested`` status

        Raises:
            ValidationError: invalid id, unknown override tier or duplicate id;
                the rejection is audited first
            StorageError: the registration could not be recorded
        """
        if agent_id is not None and not _AGENT_ID.match(agent_id):
            self._reject_registration(
                None, owner, "invalid_agent_id",
                ValidationError(f"Invalid agent id: {agent_id!r}", details={"agent_id": agent_id}),
            )

        intent = complete_intent(intent, problem_statement, self.extractor)

        tiering = self.policy.resolve_tier(intent)
        tier, tier_source = tiering.tier, TierSource.RULES
        if override_tier:
            if not self.policy.is_known_tier(override_tier):
                self._reject_registration(
                    agent_id, owner, "unknown_tier",
                    ValidationError(
                        f"Unknown tier: {override_tier}",
                        details={"tier_order": list(self.policy.pack.tier_order)},
                    ),
                )
            tier, tier_source = override_tier, TierSource.REGISTRATION_OVERRIDE

        fields = {}
        if agent_id:
            fields["id"] = agent_id
        agent = Agent(
            name=name,
            owner=owner,
            tier=tier,
            tier_source=tier_source,
            controls=self.policy.controls_for_tier(tier),
            policy_version=self.policy.policy_version,
            intent=intent,
            matched_rule_ids=tiering.matched_rule_ids,
            environment=environment,
            allowed_tools=allowed_tools_for(tier, self.policy.pack),
            created_at=self.clock(),
            **fields,
        )

        with self._lock:
            if agent_id and self._read(agent.id) is not None:
                self._reject_registration(
                    agent.id, owner, "duplicate_id",
                    ValidationError(f"Agent {agent.id} already registered", details={"agent_id": agent.id}),
                )
            event = self.ledger.record(
                LedgerEventType.AGENT_REGISTERED,
                {
                    "agent": agent.model_dump(mode="json"),
                    "actor": hash_identity(owner),
                    "reasons": tiering.reasons,
                },
                idempotency_key=f"agent_registered:{agent.id}",
            )
            agent = Agent.model_validate(event.payload["agent"])
            self._snapshot(agent)

        logger.info(f"Registered agent {agent.id} at tier {agent.tier} ({tier_source.value})")
        return agent

    def _read(self, agent_id: str) -> Optional[Agent]:
        payload = self.ledger.latest_by_field(AGENT_EVENTS, "agent.id", agent_id)
        if payload is None:
            return None
        return Agent.model_validate(payload["agent"])

    def get(self, agent_id: str) -> Optional[Agent]:
        """Current state of an agent, replayed from the ledger."""
        return self._read(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self._read(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}", entity="agent", entity_id=agent_id)
        return agent

    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        """All agents from the snapshot projection, newest first."""
        agents = []
        for key in self.ledger.storage.list(self.SNAPSHOT_PREFIX):
            raw = self.ledger.storage.get(key)
            if raw is None:
                continue
            agent = Agent.model_validate(json.loads(raw))
            if status is None or agent.status == status:
                agents.append(agent)
        return sorted(agents, key=lambda a: a.created_at, reverse=True)

    def _transition(
        self,
        agent_id: str,
        target: AgentStatus,
        actor: str,
        reason: Optional[str] = None,
        allowed_from: Optional[FrozenSet[AgentStatus]] = None,
    ) -> Agent:
        actor = hash_identity(actor)
        with self._lock:
            # re-read right before writing
            agent = self._read(agent_id)
            if agent is None:
                self.ledger.audit(
                    LedgerEventType.AGENT_TRANSITION_REJECTED,
                    {"agent_id": agent_id, "to_status": target.value, "actor": actor, "error": "not_found"},
                )
                raise NotFoundError(f"Agent not found: {agent_id}", entity="agent", entity_id=agent_id)

            permitted = _TRANSITIONS[agent.status]
            if allowed_from is not None and agent.status not in allowed_from:
                permitted = frozenset()
            if target not in permitted:
                self.ledger.audit(
                    LedgerEventType.AGENT_TRANSITION_REJECTED,
                    {
                        "agent_id": agent_id,
                        "from_status": agent.status.value,
                        "to_status": target.value,
                        "actor": actor,
                        "error": "invalid_transition",
                    },
                )
                raise StateConflictError(
                    f"Cannot move agent {agent_id} from {agent.status.value} to {target.value}",
                    current_state=agent.status.value,
                )

            updates = {"status": target, "status_reason": reason}
            if target == AgentStatus.APPROVED and not agent.approved:
                updates.update(approved=True, approved_at=self.clock(), approved_by=actor)
            updated = agent.model_copy(update=updates)

            event = self.ledger.record(
                LedgerEventType.AGENT_STATUS_CHANGED,
                {
                    "agent": updated.model_dump(mode="json"),
                    "from_status": agent.status.value,
                    "to_status": target.value,
                    "actor": actor,
                    "reason": reason,
                },
            )
            updated = Agent.model_validate(event.payload["agent"])
            self._snapshot(updated)

        logger.info(f"Agent {agent_id}: {agent.status.value} -> {target.value} by {actor}")
        return updated

    def approve(self, agent_id: str, approved_by: str, notes: Optional[str] = None) -> Agent:
        """Approve a requested agent so it may pass the gate."""
        return self._transition(
            agent_id, AgentStatus.APPROVED, approved_by, notes,
            allowed_from=frozenset({AgentStatus.REQUESTED}),
        )

    def reject(self, agent_id: str, rejected_by: str, reason: Optional[str] = None) -> Agent:
        """Reject a registration request. The agent is terminated."""
        return self._transition(
            agent_id, AgentStatus.TERMINATED, rejected_by, reason or "rejected",
            allowed_from=frozenset({AgentStatus.REQUESTED}),
        )

    def pause(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self._transition(agent_id, AgentStatus.PAUSED, actor, reason)

    def resume(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        return self._transition(
            agent_id, AgentStatus.APPROVED, actor, reason,
            allowed_from=frozenset({AgentStatus.PAUSED}),
        )

    def kill(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        """Emergency stop. Terminal."""
        return self._transition(agent_id, AgentStatus.KILLED, actor, reason)

    def terminate(self, agent_id: str, actor: str, reason: Optional[str] = None) -> Agent:
        """Planned retirement. Terminal."""
        return self._transition(agent_id, AgentStatus.TERMINATED, actor, reason)
