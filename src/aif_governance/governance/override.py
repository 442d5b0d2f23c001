"""Tier overrides - time-boxed, human-approved changes to an agent's tier.

An approved override wins over the agent's frozen tier until it expires.
Expiry is evaluated at read time against the injected clock; nothing needs
to run for an override to lapse.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from aif_governance.common.constants import OverrideConstants
from aif_governance.common.exceptions import NotFoundError, StateConflictError, ValidationError
from aif_governance.governance.audit.ledger import Ledger
from aif_governance.governance.policies.engine import PolicyEngine
from aif_governance.governance.redact import hash_identity
from aif_governance.governance.registry import AgentRegistry
from aif_governance.governance.schemas import (
    LedgerEventType,
    OverrideRecord,
    OverrideStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

OVERRIDE_EVENTS = (LedgerEventType.OVERRIDE_REQUESTED, LedgerEventType.OVERRIDE_STATUS_CHANGED)


def clamp_ttl(ttl_minutes: Optional[int], default: int = OverrideConstants.DEFAULT_TTL_MINUTES) -> int:
    """TTL in minutes, bounded to [1, 1440]. None means the default."""
    if ttl_minutes is None:
        ttl_minutes = default
    return max(
        OverrideConstants.MIN_TTL_MINUTES,
        min(OverrideConstants.MAX_TTL_MINUTES, int(ttl_minutes)),
    )


class OverrideManager:
    """Request, approve, reject and revoke tier overrides."""

    SNAPSHOT_PREFIX = "overrides/"

    def __init__(
        self,
        ledger: Ledger,
        policy: PolicyEngine,
        registry: AgentRegistry,
        clock: Callable[[], datetime] = utc_now,
        default_ttl_minutes: int = OverrideConstants.DEFAULT_TTL_MINUTES,
    ):
        self.ledger = ledger
        self.policy = policy
        self.registry = registry
        self.clock = clock
        self.default_ttl_minutes = default_ttl_minutes
        self._lock = threading.Lock()

    def _persist(self, event_type: LedgerEventType, record: OverrideRecord, actor: str, **extra) -> OverrideRecord:
        event = self.ledger.record(
            event_type,
            {"override": record.model_dump(mode="json"), "actor": actor, **extra},
            idempotency_key=f"{event_type.value}:{record.id}" if event_type == LedgerEventType.OVERRIDE_REQUESTED else None,
        )
        stored = OverrideRecord.model_validate(event.payload["override"])
        self.ledger.put_snapshot(f"{self.SNAPSHOT_PREFIX}{stored.id}", stored.model_dump_json())
        return stored

    def _read(self, override_id: str) -> Optional[OverrideRecord]:
        payload = self.ledger.latest_by_field(OVERRIDE_EVENTS, "override.id", override_id)
        if payload is None:
            return None
        return OverrideRecord.model_validate(payload["override"])

    def _reject_transition(self, override_id: str, actor: str, target: OverrideStatus, current: Optional[OverrideRecord]):
        self.ledger.audit(
            LedgerEventType.OVERRIDE_TRANSITION_REJECTED,
            {
                "override_id": override_id,
                "from_status": current.status.value if current else None,
                "to_status": target.value,
                "actor": actor,
                "error": "not_found" if current is None else "invalid_transition",
            },
        )
        if current is None:
            raise NotFoundError(f"Override not found: {override_id}", entity="override", entity_id=override_id)
        raise StateConflictError(
            f"Cannot move override {override_id} from {current.status.value} to {target.value}",
            current_state=current.status.value,
        )

    def _reject_request(self, agent_id: str, requested_tier: str, actor: str, error: str, exc: Exception):
        self.ledger.audit(
            LedgerEventType.OVERRIDE_REQUEST_REJECTED,
            {"agent_id": agent_id, "requested_tier": requested_tier, "actor": actor, "error": error},
        )
        raise exc

    def get(self, override_id: str) -> Optional[OverrideRecord]:
        return self._read(override_id)

    def request(self, agent_id: str, requested_tier: str, requested_by: str, reason: str = "") -> OverrideRecord:
        """Ask for an agent to run at a different tier.

        Raises:
            ValidationError: unknown tier
            NotFoundError: unknown agent
            StateConflictError: agent is killed or terminated

        Every rejection is audited before it is raised.
        """
        requested_by = hash_identity(requested_by)
        if not self.policy.is_known_tier(requested_tier):
            self._reject_request(
                agent_id, requested_tier, requested_by, "unknown_tier",
                ValidationError(
                    f"Unknown tier: {requested_tier}",
                    details={"tier_order": list(self.policy.pack.tier_order)},
                ),
            )
        agent = self.registry.get(agent_id)
        if agent is None:
            self._reject_request(
                agent_id, requested_tier, requested_by, "agent_not_found",
                NotFoundError(f"Agent not found: {agent_id}", entity="agent", entity_id=agent_id),
            )
        if agent.status.is_terminal:
            self._reject_request(
                agent_id, requested_tier, requested_by, "agent_terminal",
                StateConflictError(
                    f"Agent {agent_id} is {agent.status.value}; overrides are not accepted",
                    current_state=agent.status.value,
                ),
            )

        record = OverrideRecord(
            agent_id=agent_id,
            requested_tier=requested_tier,
            requested_by=requested_by,
            requested_at=self.clock(),
            reason=reason or "",
        )
        with self._lock:
            record = self._persist(
                LedgerEventType.OVERRIDE_REQUESTED, record, requested_by,
                from_tier=agent.tier,
            )
        logger.info(f"Override {record.id} requested for {agent_id}: {agent.tier} -> {requested_tier}")
        return record

    def approve(self, override_id: str, approved_by: str, ttl_minutes: Optional[int] = None) -> OverrideRecord:
        """Approve a pending override for ``ttl_minutes`` (clamped to 1..1440)."""
        approved_by = hash_identity(approved_by)
        ttl = clamp_ttl(ttl_minutes, self.default_ttl_minutes)
        with self._lock:
            current = self._read(override_id)
            if current is None or current.status != OverrideStatus.PENDING:
                self._reject_transition(override_id, approved_by, OverrideStatus.APPROVED, current)

            now = self.clock()
            updated = current.model_copy(update={
                "status": OverrideStatus.APPROVED,
                "approved_by": approved_by,
                "approved_at": now,
                "expires_at": now + timedelta(minutes=ttl),
            })
            updated = self._persist(
                LedgerEventType.OVERRIDE_STATUS_CHANGED, updated, approved_by,
                from_status=current.status.value, ttl_minutes=ttl,
            )
        logger.info(f"Override {override_id} approved by {approved_by} for {ttl} minutes")
        return updated

    def reject(self, override_id: str, rejected_by: str, reason: Optional[str] = None) -> OverrideRecord:
        """Turn down a pending override."""
        rejected_by = hash_identity(rejected_by)
        with self._lock:
            current = self._read(override_id)
            if current is None or current.status != OverrideStatus.PENDING:
                self._reject_transition(override_id, rejected_by, OverrideStatus.REJECTED, current)

            updated = current.model_copy(update={
                "status": OverrideStatus.REJECTED,
                "rejected_by": rejected_by,
                "rejected_at": self.clock(),
            })
            updated = self._persist(
                LedgerEventType.OVERRIDE_STATUS_CHANGED, updated, rejected_by,
                from_status=current.status.value, reason=reason,
            )
        logger.info(f"Override {override_id} rejected by {rejected_by}")
        return updated

    def revoke(self, override_id: str, revoked_by: str) -> OverrideRecord:
        """End an override now. Revoking twice returns the revoked record unchanged."""
        revoked_by = hash_identity(revoked_by)
        with self._lock:
            current = self._read(override_id)
            if current is None:
                self._reject_transition(override_id, revoked_by, OverrideStatus.REVOKED, None)
            if current.status == OverrideStatus.REVOKED:
                return current

            now = self.clock()
            updated = current.model_copy(update={
                "status": OverrideStatus.REVOKED,
                "revoked_by": revoked_by,
                "revoked_at": now,
                "expires_at": now,
            })
            updated = self._persist(
                LedgerEventType.OVERRIDE_STATUS_CHANGED, updated, revoked_by,
                from_status=current.status.value,
            )
        logger.info(f"Override {override_id} revoked by {revoked_by}")
        return updated

    def _replay_for_agent(self, agent_id: str) -> Dict[str, OverrideRecord]:
        records: Dict[str, OverrideRecord] = {}
        events = self.ledger.events(
            OVERRIDE_EVENTS,
            lambda payload: (payload.get("override") or {}).get("agent_id") == agent_id,
            newest_first=False,
        )
        for event in events:
            record = OverrideRecord.model_validate(event.payload["override"])
            records[record.id] = record
        return records

    def active_override_for(self, agent_id: str) -> Optional[OverrideRecord]:
        """The approved, unexpired override with the latest expiry, if any."""
        now = self.clock()
        active = [
            r for r in self._replay_for_agent(agent_id).values() if r.is_active(now)
        ]
        if not active:
            return None
        return max(active, key=lambda r: r.expires_at)

    def list_overrides(self, agent_id: Optional[str] = None) -> List[OverrideRecord]:
        """Overrides from the snapshot projection, newest request first."""
        records = []
        for key in self.ledger.storage.list(self.SNAPSHOT_PREFIX):
            raw = self.ledger.storage.get(key)
            if raw is None:
                continue
            record = OverrideRecord.model_validate(json.loads(raw))
            if agent_id is None or record.agent_id == agent_id:
                records.append(record)
        return sorted(records, key=lambda r: r.requested_at, reverse=True)
