"""API Schemas - Request/Response models for the API Gateway.

Domain records (Agent, Decision, OverrideRecord, EvaluationResult,
ExecutionResult, LedgerEvent) are returned as-is; only request bodies and
the few composite responses are defined here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aif_governance.governance.schemas import ControlBundle, LedgerEvent


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class IntentRequest(BaseModel):
    """Intent as submitted by a caller. Accepts camelCase keys too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    actions: Optional[List[str]] = Field(default=None, description="Verbs the agent will perform")
    systems: Optional[List[str]] = Field(default=None, description="Systems the agent will touch")
    data_sensitivity: Optional[str] = Field(
        default=None, description="PUBLIC, INTERNAL, CONFIDENTIAL or PII"
    )
    cross_border: Optional[bool] = Field(default=None, description="Data leaves its jurisdiction")


class RegisterAgentRequest(BaseModel):
    """Agent registration request."""
    name: str = Field(..., min_length=1, max_length=200, description="Display name")
    intent: Optional[IntentRequest] = Field(default=None, description="Structured intent")
    problem_statement: Optional[str] = Field(
        default=None, max_length=10_000,
        description="Free-text description used when no intent is given"
    )
    override_tier: Optional[str] = Field(default=None, description="Tier requested at registration")
    environment: str = Field(default="production", description="Deployment environment")
    agent_id: Optional[str] = Field(default=None, description="Externally supplied agent id")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Claims triage assistant",
                "problem_statement": "Update claim records in Salesforce for benefit requests",
                "environment": "production",
            }
        }
    }


class AgentActionRequest(BaseModel):
    """Body for approve/reject/pause/resume/kill/terminate."""
    reason: Optional[str] = Field(default=None, max_length=2000)


class EvaluateRequest(BaseModel):
    """Gate request for one agent action."""
    agent_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, description="Verb, e.g. update_record")
    target: str = Field(..., min_length=1, description="Target system, e.g. salesforce")
    intent: Optional[IntentRequest] = None
    environment: Optional[str] = Field(default=None, description="Defaults to the agent's environment")


class DecisionActionRequest(BaseModel):
    """Body for approving or denying a pending decision."""
    reason: Optional[str] = Field(default=None, max_length=2000)


class ExecuteRequest(BaseModel):
    """Body for executing an approved decision."""
    payload: Dict[str, Any] = Field(default_factory=dict)


class OverrideCreateRequest(BaseModel):
    """Tier override request."""
    agent_id: str = Field(..., min_length=1)
    requested_tier: str = Field(..., min_length=1)
    reason: str = Field(default="", max_length=2000)


class OverrideApproveRequest(BaseModel):
    """Override approval; TTL is clamped to 1..1440 minutes."""
    ttl_minutes: Optional[int] = Field(default=None, description="Minutes until expiry")


class OverrideRejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class ClassifyRequest(BaseModel):
    """Tier preview request."""
    intent: Optional[IntentRequest] = None
    problem_statement: Optional[str] = Field(default=None, max_length=10_000)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class ClassifyResponse(BaseModel):
    """Tier preview: what registration would freeze for this intent."""
    tier: str
    matched_rule_ids: List[str]
    reasons: List[str]
    controls: ControlBundle
    allowed_tools: List[str]
    policy_version: str


class AuditTrailResponse(BaseModel):
    events: List[LedgerEvent]
    count: int


class LedgerVerifyResponse(BaseModel):
    valid: bool
    length: int
    head_hash: str
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional context")
    request_id: Optional[str] = Field(
        default=None, description="Request ID for debugging"
    )
