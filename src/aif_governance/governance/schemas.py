"""Governance schemas - type definitions for tiering, gating and audit.

Every record the control plane stores or returns is a closed pydantic
model. On-disk policy packs keep their camelCase keys through aliases,
so models accept either spelling but always serialize snake_case unless
``by_alias=True`` is requested.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp used as the default clock."""
    return datetime.now(timezone.utc)


def _normalize_names(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    return frozenset(
        str(item).strip().lower() for item in value if str(item).strip()
    )


class DataSensitivity(str, Enum):
    """Data classification, ordered from least to most sensitive."""
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"
    CONFIDENTIAL = "CONFIDENTIAL"
    PII = "PII"


class AuditLevel(str, Enum):
    """Depth of audit capture required by a tier."""
    MINIMAL = "minimal"
    STANDARD = "standard"
    ENHANCED = "enhanced"
    FULL = "full"


class AgentStatus(str, Enum):
    """Agent lifecycle states. KILLED and TERMINATED are terminal."""
    REQUESTED = "requested"
    APPROVED = "approved"
    PAUSED = "paused"
    KILLED = "killed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.KILLED, AgentStatus.TERMINATED)


class TierSource(str, Enum):
    """Where an agent's frozen tier came from."""
    RULES = "rules"
    REGISTRATION_OVERRIDE = "registration_override"


class ControlMode(str, Enum):
    """How much human involvement an action requires."""
    AUTO = "AUTO"
    HOTL = "HOTL"
    HITL = "HITL"


class DecisionStatus(str, Enum):
    """Decision lifecycle states."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXECUTED = "EXECUTED"


class DecisionOutcome(str, Enum):
    """Outcome carried on every gate ledger event."""
    ALLOW = "ALLOW"
    DENY = "DENY"
    PENDING = "PENDING"


class OverrideStatus(str, Enum):
    """Tier override lifecycle states."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class ReasonCode(str, Enum):
    """Machine-readable reason attached to gate results."""
    AGENT_NOT_REGISTERED = "agent_not_registered"
    AGENT_KILLED = "agent_killed"
    AGENT_TERMINATED = "agent_terminated"
    AGENT_PAUSED = "agent_paused"
    AGENT_NOT_APPROVED = "agent_not_approved"
    SANDBOX_ONLY = "sandbox_only"
    APPROVAL_REQUIRED = "approval_required"
    ALLOWED_AUTO = "allowed_auto"
    ALLOWED_HOTL = "allowed_hotl"
    HUMAN_APPROVED = "human_approved"
    HUMAN_DENIED = "human_denied"


class LedgerEventType(str, Enum):
    """Event types written to the governance ledger."""
    AGENT_REGISTERED = "agent_registered"
    AGENT_REGISTRATION_REJECTED = "agent_registration_rejected"
    AGENT_STATUS_CHANGED = "agent_status_changed"
    AGENT_TRANSITION_REJECTED = "agent_transition_rejected"
    GATE_DENIED = "gate_denied"
    DECISION_CREATED = "decision_created"
    DECISION_STATUS_CHANGED = "decision_status_changed"
    DECISION_TRANSITION_REJECTED = "decision_transition_rejected"
    EXECUTION = "execution"
    EXECUTION_BLOCKED = "execution_blocked"
    OVERRIDE_REQUESTED = "override_requested"
    OVERRIDE_REQUEST_REJECTED = "override_request_rejected"
    OVERRIDE_STATUS_CHANGED = "override_status_changed"
    OVERRIDE_TRANSITION_REJECTED = "override_transition_rejected"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


# ---------------------------------------------------------------------------
# Intent and policy pack
# ---------------------------------------------------------------------------

class Intent(_FrozenModel):
    """What an agent intends to do.

    Action and system names are stripped and lower-cased. Empty sets are
    allowed here; ``build_intent`` applies the conservative defaults.
    """
    actions: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Verbs the agent will perform"
    )
    systems: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Systems the agent will touch"
    )
    data_sensitivity: DataSensitivity = Field(
        default=DataSensitivity.INTERNAL,
        description="Most sensitive data class handled"
    )
    cross_border: bool = Field(
        default=False,
        description="Whether data leaves its home jurisdiction"
    )

    @field_validator("actions", "systems", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> FrozenSet[str]:
        return _normalize_names(value)

    @field_validator("data_sensitivity", mode="before")
    @classmethod
    def _upper_sensitivity(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_serializer("actions", "systems")
    def _serialize_sorted(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class RuleConditions(_FrozenModel):
    """AND-combined match conditions. An absent condition always holds."""
    actions_any: Optional[FrozenSet[str]] = None
    actions_only: Optional[FrozenSet[str]] = None
    systems_any: Optional[FrozenSet[str]] = None
    data_sensitivity_in: Optional[FrozenSet[DataSensitivity]] = None
    cross_border: Optional[bool] = None

    @field_validator("actions_any", "actions_only", "systems_any", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Optional[FrozenSet[str]]:
        if value is None:
            return None
        return _normalize_names(value)

    @field_serializer("actions_any", "actions_only", "systems_any", "data_sensitivity_in")
    def _serialize_sorted(self, value: Optional[FrozenSet[Any]]) -> Optional[List[str]]:
        if value is None:
            return None
        return sorted(v.value if isinstance(v, Enum) else v for v in value)

    def matches(self, intent: Intent) -> bool:
        """Check every present condition against the intent."""
        if self.actions_any is not None and not (self.actions_any & intent.actions):
            return False
        if self.actions_only is not None:
            # an empty intent never satisfies actionsOnly
            if not intent.actions or not intent.actions <= self.actions_only:
                return False
        if self.systems_any is not None and not (self.systems_any & intent.systems):
            return False
        if (
            self.data_sensitivity_in is not None
            and intent.data_sensitivity not in self.data_sensitivity_in
        ):
            return False
        if self.cross_border is not None and self.cross_border != intent.cross_border:
            return False
        return True


class Rule(_FrozenModel):
    """A tiering rule: if the conditions match, propose ``then_tier``."""
    id: str = Field(..., min_length=1, description="Unique rule identifier")
    conditions: RuleConditions = Field(
        default_factory=RuleConditions,
        alias="if",
        description="Match conditions"
    )
    then_tier: str = Field(..., description="Tier proposed on match")
    rationale: Optional[str] = Field(
        default=None,
        description="Human-readable reason for the rule"
    )


class ControlBundle(_FrozenModel):
    """Runtime controls enforced for a tier."""
    logging: bool = Field(default=True, description="Record agent activity")
    pii_redaction: bool = Field(default=False, description="Redact PII in outputs")
    human_in_loop: bool = Field(default=False, description="A human supervises execution")
    approval_required: bool = Field(default=False, description="Every action needs approval")
    sandbox_only: bool = Field(default=False, description="Only sandbox environments allowed")
    rate_limit_per_min: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum actions per minute"
    )
    audit_level: AuditLevel = Field(
        default=AuditLevel.STANDARD,
        description="Depth of audit capture"
    )
    kill_switch_required: bool = Field(
        default=False,
        description="Agent must be wired to a kill switch"
    )


class TierDefinition(_FrozenModel):
    """One tier entry of the pack, with its default controls."""
    tier: str = Field(..., min_length=1)
    autonomy_behavior: Optional[str] = None
    governance_requirements: List[str] = Field(default_factory=list)
    default_controls: ControlBundle = Field(default_factory=ControlBundle)


class GatingPolicy(_FrozenModel):
    """Action and environment sets used to pick a control mode."""
    restricted_actions: FrozenSet[str] = Field(
        default_factory=lambda: frozenset({"delete_record", "transfer_funds", "change_permissions"}),
        description="Actions that always require a human decision"
    )
    write_actions: FrozenSet[str] = Field(
        default_factory=lambda: frozenset({"update_record", "create_record", "create_ticket", "send_message"}),
        description="Actions supervised by a human on the loop"
    )
    sandbox_environments: FrozenSet[str] = Field(
        default_factory=lambda: frozenset({"sandbox", "dev", "test"}),
        description="Environments that satisfy sandbox_only"
    )

    @field_validator("restricted_actions", "write_actions", "sandbox_environments", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> FrozenSet[str]:
        return _normalize_names(value)

    @field_serializer("restricted_actions", "write_actions", "sandbox_environments")
    def _serialize_sorted(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class PolicyPack(_FrozenModel):
    """Validated, immutable policy pack.

    Built by the loader; invariants are checked there so this model can be
    shared between threads without locking.
    """
    version: str = Field(..., min_length=1)
    generated_at: Optional[str] = None
    tier_order: Tuple[str, ...] = Field(..., min_length=1)
    rules: Tuple[Rule, ...] = Field(default_factory=tuple)
    tier_definitions: Tuple[TierDefinition, ...] = Field(default_factory=tuple)
    merge_strategy: str = "MAX_TIER"
    gating: GatingPolicy = Field(default_factory=GatingPolicy)

    @property
    def tier_defaults(self) -> Dict[str, ControlBundle]:
        return {t.tier: t.default_controls for t in self.tier_definitions}

    def rank(self, tier: str) -> int:
        """Position of a tier in the total order. Raises ValueError if unknown."""
        return self.tier_order.index(tier)

    @property
    def lowest_tier(self) -> str:
        return self.tier_order[0]


class TieringResult(BaseModel):
    """Outcome of tier resolution."""
    tier: str
    matched_rule_ids: List[str] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class Agent(BaseModel):
    """Registered agent with tier and controls frozen at registration."""
    id: str = Field(
        default_factory=lambda: f"agt_{uuid4().hex[:12]}",
        description="Unique agent identifier"
    )
    name: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    status: AgentStatus = AgentStatus.REQUESTED
    approved: bool = False
    tier: str
    tier_source: TierSource = TierSource.RULES
    controls: ControlBundle
    policy_version: str
    intent: Intent
    matched_rule_ids: List[str] = Field(default_factory=list)
    environment: str = "production"
    allowed_tools: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    status_reason: Optional[str] = None


class Decision(BaseModel):
    """A gated action and its lifecycle."""
    id: str = Field(
        default_factory=lambda: f"dec_{uuid4().hex[:12]}",
        description="Unique decision identifier"
    )
    agent_id: str
    action: str
    target: str
    tier: str
    control_mode: ControlMode
    allowed: bool
    status: DecisionStatus
    reason: ReasonCode
    rationale: List[str] = Field(default_factory=list)
    policy_version: str
    matched_rule_ids: List[str] = Field(default_factory=list)
    environment: Optional[str] = None
    intent: Optional[Intent] = None
    override_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None
    executed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DecisionStatus.DENIED, DecisionStatus.EXECUTED)


class OverrideRecord(BaseModel):
    """Time-boxed request to run an agent at a different tier."""
    id: str = Field(
        default_factory=lambda: f"ovr_{uuid4().hex[:12]}",
        description="Unique override identifier"
    )
    agent_id: str
    requested_tier: str
    requested_by: str
    requested_at: datetime = Field(default_factory=utc_now)
    reason: str = ""
    status: OverrideStatus = OverrideStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        """Active only while approved and unexpired, evaluated at read time."""
        return (
            self.status == OverrideStatus.APPROVED
            and self.expires_at is not None
            and now < self.expires_at
        )


class LedgerEvent(BaseModel):
    """One hash-chained ledger entry."""
    model_config = ConfigDict(frozen=True)

    seq: int
    ts: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: str
    hash: str


class AppendResult(BaseModel):
    """Soft-failure result of a ledger append."""
    ok: bool
    event: Optional[LedgerEvent] = None
    error: Optional[str] = None
    duplicate: bool = False


class EvaluationResult(BaseModel):
    """What the gate tells the caller."""
    allowed: bool
    outcome: DecisionOutcome
    reason: ReasonCode
    decision: Optional[Decision] = None
    tier: Optional[str] = None
    control_mode: Optional[ControlMode] = None
    rationale: List[str] = Field(default_factory=list)

    @property
    def pending(self) -> bool:
        return self.outcome == DecisionOutcome.PENDING


class ExecutionOutcome(BaseModel):
    """Result reported by an execution adapter."""
    system: str
    action: str
    success: bool
    simulated: bool = False
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ExecutionResult(BaseModel):
    """Result of executing an approved decision."""
    allowed: bool
    reason: Optional[ReasonCode] = None
    decision: Decision
    outcome: Optional[ExecutionOutcome] = None
