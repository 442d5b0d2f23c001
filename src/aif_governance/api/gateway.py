"""API Gateway - FastAPI application exposing the governance control plane."""

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional
from uuid import uuid4

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aif_governance.api.schemas import (
    AgentActionRequest,
    AuditTrailResponse,
    ClassifyRequest,
    ClassifyResponse,
    DecisionActionRequest,
    ErrorResponse,
    EvaluateRequest,
    ExecuteRequest,
    IntentRequest,
    LedgerVerifyResponse,
    OverrideApproveRequest,
    OverrideCreateRequest,
    OverrideRejectRequest,
    RegisterAgentRequest,
)
from aif_governance.api.service import GovernanceService
from aif_governance.common.config import get_config
from aif_governance.common.exceptions import (
    ConfigurationError,
    GovernanceError,
    LedgerIntegrityError,
    NotFoundError,
    PolicyError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from aif_governance.governance.intent import build_intent
from aif_governance.governance.schemas import (
    Agent,
    AgentStatus,
    Decision,
    DecisionStatus,
    EvaluationResult,
    ExecutionResult,
    Intent,
    OverrideRecord,
)

config = get_config()

logging.basicConfig(
    level=getattr(logging, config.log_level.value),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("aif_api")


class ServiceManager:
    """Thread-safe service singleton manager."""

    _instance: Optional[GovernanceService] = None
    _lock = threading.Lock()
    _initialized = False

    @classmethod
    def get_service(cls) -> GovernanceService:
        """Get or create the governance service instance (thread-safe)."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = GovernanceService()
                    cls._initialized = True
                    logger.info("GovernanceService initialized")
        return cls._instance

    @classmethod
    def set_service(cls, service: GovernanceService) -> None:
        """Install a pre-built service (tests, embedding)."""
        with cls._lock:
            cls._instance = service
            cls._initialized = True

    @classmethod
    def shutdown(cls) -> None:
        """Shutdown the service and release resources."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.shutdown()
                cls._instance = None
                cls._initialized = False

                logger.info("GovernanceService shutdown complete")


def get_service() -> GovernanceService:
    """Get the governance service instance."""
    return ServiceManager.get_service()


# =============================================================================
# CORS CONFIGURATION
# =============================================================================

def get_cors_origins() -> List[str]:
    """Get allowed CORS origins from configuration.

    In production, set AIF_CORS_ORIGINS to a comma-separated list of
    allowed origins.

    Example: AIF_CORS_ORIGINS="https://console.example.com"
    """
    if config.cors_origins:
        return config.cors_origins

    if config.is_production:
        logger.warning(
            "AIF_CORS_ORIGINS not set in production. "
            "CORS will be disabled. Set AIF_CORS_ORIGINS for cross-origin access."
        )
        return []

    logger.warning("Running in development mode with permissive CORS (allow_origins=['*'])")
    return ["*"]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup; a broken policy pack fails here
    logger.info("AIF Governance API starting up...")
    get_service()
    logger.info("AIF Governance API ready")

    yield

    logger.info("AIF Governance API shutting down...")
    ServiceManager.shutdown()
    logger.info("AIF Governance API shutdown complete")


app = FastAPI(
    title="AIF Governance Control Plane",
    description=(
        "Tiering, gating and tamper-evident audit for autonomous agents. "),
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if config.is_production else "/docs",
    redoc_url=None if config.is_production else "/redoc",
)


cors_origins = get_cors_origins()
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["POST", "GET"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Actor"],
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

# most specific first
_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (StateConflictError, 409),
    (StorageError, 503),
    (PolicyError, 500),
    (ConfigurationError, 500),
    (LedgerIntegrityError, 500),
)


def status_for(exc: GovernanceError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    """Map the governance error hierarchy onto HTTP status codes."""
    request_id = getattr(request.state, "request_id", None)
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{exc.code} on {request.url.path} [{request_id}]: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path} [{request_id}]: {exc.message}")
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are validation errors like any other."""
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error="VALIDATION_ERROR",
            message="Invalid request",
            details={"errors": jsonable_encoder(exc.errors())},
            request_id=request_id,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected errors.

    Logs full exception for debugging but returns sanitized message to client.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.exception(f"Unexpected error [{request_id}]: {type(exc).__name__}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            request_id=request_id,
        ).model_dump(),
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to each request for tracing."""
    request_id = f"req_{uuid4().hex[:12]}"
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _intent(
    service: GovernanceService,
    body: Optional[IntentRequest],
    problem_statement: Optional[str] = None,
) -> Optional[Intent]:
    if body is None and not problem_statement:
        return None
    body = body or IntentRequest()
    return build_intent(
        actions=body.actions,
        systems=body.systems,
        data_sensitivity=body.data_sensitivity,
        cross_border=body.cross_border,
        problem_statement=problem_statement,
        extractor=service.extractor,
    )


# =============================================================================
# AGENTS
# =============================================================================
# Route handlers are plain functions: storage calls block, so FastAPI runs
# them in its threadpool instead of on the event loop.

@app.post("/agents", response_model=Agent, status_code=201, summary="Register an agent")
def register_agent(
    request: RegisterAgentRequest,
    x_actor: str = Header(default="anonymous"),
) -> Agent:
    service = get_service()
    return service.register_agent(
        name=request.name,
        owner=x_actor,
        intent=_intent(service, request.intent, request.problem_statement),
        override_tier=request.override_tier,
        environment=request.environment,
        agent_id=request.agent_id,
    )


@app.get("/agents", response_model=List[Agent])
def list_agents(status: Optional[AgentStatus] = None) -> List[Agent]:
    return get_service().list_agents(status)


@app.get("/agents/{agent_id}", response_model=Agent)
def get_agent(agent_id: str) -> Agent:
    return get_service().get_agent(agent_id)


@app.get("/agents/{agent_id}/override", response_model=Optional[OverrideRecord])
def get_active_override(agent_id: str) -> Optional[OverrideRecord]:
    return get_service().active_override(agent_id)


_AGENT_ACTIONS = {
    "approve": GovernanceService.approve_agent,
    "reject": GovernanceService.reject_agent,
    "pause": GovernanceService.pause_agent,
    "resume": GovernanceService.resume_agent,
    "kill": GovernanceService.kill_agent,
    "terminate": GovernanceService.terminate_agent,
}


@app.post("/agents/{agent_id}/{operation}", response_model=Agent, summary="Change an agent's lifecycle state")
def agent_operation(
    agent_id: str,
    operation: str,
    request: Optional[AgentActionRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
) -> Agent:
    handler = _AGENT_ACTIONS.get(operation)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown agent operation: {operation}")
    reason = request.reason if request else None
    return handler(get_service(), agent_id, x_actor, reason)


# =============================================================================
# GATE & DECISIONS
# =============================================================================

@app.post(
    "/gate/evaluate",
    response_model=EvaluationResult,
    responses={
        400: {"description": "Invalid request", "model": ErrorResponse},
        503: {"description": "Storage unavailable", "model": ErrorResponse},
    },
    summary="Gate an agent action",
    description=(
        "Resolves the agent's effective tier and controls and returns ALLOW, "
        "DENY or PENDING with a machine-readable reason. Agent-state denials "
        "are normal 200 responses with allowed=false."
    ),
)
def evaluate(
    request: EvaluateRequest,
    x_actor: Optional[str] = Header(default=None),
) -> EvaluationResult:
    service = get_service()
    result = service.evaluate(
        request.agent_id,
        request.action,
        request.target,
        intent=_intent(service, request.intent) if request.intent else None,
        environment=request.environment,
        actor=x_actor,
    )
    logger.info(f"Gate {result.outcome.value} for {request.agent_id}: {result.reason.value}")
    return result


@app.get("/decisions", response_model=List[Decision])
def list_decisions(
    agent_id: Optional[str] = None,
    status: Optional[DecisionStatus] = None,
) -> List[Decision]:
    return get_service().list_decisions(agent_id, status)


@app.get("/decisions/{decision_id}", response_model=Decision)
def get_decision(decision_id: str) -> Decision:
    return get_service().get_decision(decision_id)


@app.post("/decisions/{decision_id}/approve", response_model=Decision)
def approve_decision(
    decision_id: str,
    request: Optional[DecisionActionRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
) -> Decision:
    return get_service().approve(decision_id, x_actor, request.reason if request else None)


@app.post("/decisions/{decision_id}/deny", response_model=Decision)
def deny_decision(
    decision_id: str,
    request: Optional[DecisionActionRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
) -> Decision:
    return get_service().deny(decision_id, x_actor, request.reason if request else None)


@app.post(
    "/decisions/{decision_id}/execute",
    response_model=ExecutionResult,
    responses={403: {"description": "Agent may not act", "model": ExecutionResult}},
)
def execute_decision(
    decision_id: str,
    request: Optional[ExecuteRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
):
    result = get_service().execute(decision_id, request.payload if request else None, x_actor)
    if not result.allowed:
        return JSONResponse(status_code=403, content=result.model_dump(mode="json", by_alias=True))
    return result


# =============================================================================
# OVERRIDES
# =============================================================================

@app.post("/overrides", response_model=OverrideRecord, status_code=201)
def request_override(
    request: OverrideCreateRequest,
    x_actor: str = Header(default="anonymous"),
) -> OverrideRecord:
    return get_service().request_override(
        request.agent_id, request.requested_tier, x_actor, request.reason
    )


@app.get("/overrides", response_model=List[OverrideRecord])
def list_overrides(agent_id: Optional[str] = None) -> List[OverrideRecord]:
    return get_service().list_overrides(agent_id)


@app.post("/overrides/{override_id}/approve", response_model=OverrideRecord)
def approve_override(
    override_id: str,
    request: Optional[OverrideApproveRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
) -> OverrideRecord:
    return get_service().approve_override(
        override_id, x_actor, request.ttl_minutes if request else None
    )


@app.post("/overrides/{override_id}/reject", response_model=OverrideRecord)
def reject_override(
    override_id: str,
    request: Optional[OverrideRejectRequest] = Body(default=None),
    x_actor: str = Header(default="anonymous"),
) -> OverrideRecord:
    return get_service().reject_override(override_id, x_actor, request.reason if request else None)


@app.post("/overrides/{override_id}/revoke", response_model=OverrideRecord)
def revoke_override(
    override_id: str,
    x_actor: str = Header(default="anonymous"),
) -> OverrideRecord:
    return get_service().revoke_override(override_id, x_actor)


# =============================================================================
# AUDIT & CLASSIFICATION
# =============================================================================

@app.get("/audit", response_model=AuditTrailResponse)
def audit_trail(
    event_type: Optional[str] = None,
    agent_id: Optional[str] = None,
    decision_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> AuditTrailResponse:
    events = get_service().get_audit_trail(event_type, agent_id, decision_id, limit)
    return AuditTrailResponse(events=events, count=len(events))


@app.get("/audit/verify", response_model=LedgerVerifyResponse)
def verify_ledger() -> LedgerVerifyResponse:
    return LedgerVerifyResponse(**get_service().verify_ledger())


@app.post("/classify", response_model=ClassifyResponse, summary="Preview tier and controls")
def classify(request: ClassifyRequest) -> ClassifyResponse:
    service = get_service()
    intent = _intent(service, request.intent, request.problem_statement)
    return ClassifyResponse(**service.classify(intent))


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/health")
def health_check() -> dict:
    """Health check endpoint."""
    health = get_service().health_check()
    return {**health, "service": "aif-governance"}


@app.get("/ready")
def readiness_check() -> dict:
    """Readiness check endpoint.

    Returns 503 until the service singleton is initialized.
    """
    if not ServiceManager._initialized:
        raise HTTPException(status_code=503, detail="not_ready")
    return {"status": "ready", "service": "aif-governance"}


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "aif_governance.api.gateway:app",
        host=config.api_host,
        port=config.api_port,
        reload=config.is_development,
        log_level=config.log_level.value.lower(),
    )
