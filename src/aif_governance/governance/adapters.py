"""Execution adapters - the boundary where approved actions reach a system.

Only simulated adapters ship. They return a canned success so the decision
lifecycle can be exercised end to end without touching a real system.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Protocol

from aif_governance.governance.schemas import ExecutionOutcome

logger = logging.getLogger(__name__)


class ExecutionAdapter(Protocol):
    """Carries out one approved action against a target system."""

    def execute(self, system: str, action: str, payload: Dict[str, Any]) -> ExecutionOutcome:
        ...


class SimulatedAdapter:
    """Adapter that records the call and reports success."""

    def __init__(self, system: str):
        self.system = system
        self.calls = 0

    def execute(self, system: str, action: str, payload: Dict[str, Any]) -> ExecutionOutcome:
        self.calls += 1
        logger.info(f"Simulated {self.system} execution of {action}")
        return ExecutionOutcome(
            system=system,
            action=action,
            success=True,
            simulated=True,
            result={"system": system, "action": action, "simulated": True, "result": "ok"},
        )


class AdapterRegistry:
    """Routes a target system to its adapter, with an optional fallback."""

    DEFAULT_SYSTEMS = ("salesforce", "servicenow")

    def __init__(self, fallback: Optional[ExecutionAdapter] = None):
        self._adapters: Dict[str, ExecutionAdapter] = {}
        self.fallback = fallback

    @classmethod
    def simulated(cls, systems: Iterable[str] = DEFAULT_SYSTEMS) -> "AdapterRegistry":
        """Registry with a simulated adapter per system and a simulated fallback."""
        registry = cls(fallback=SimulatedAdapter("generic"))
        for system in systems:
            registry.register(system, SimulatedAdapter(system))
        return registry

    def register(self, system: str, adapter: ExecutionAdapter) -> None:
        self._adapters[system.strip().lower()] = adapter

    def get(self, system: str) -> Optional[ExecutionAdapter]:
        return self._adapters.get(system.strip().lower(), self.fallback)

    def execute(self, system: str, action: str, payload: Dict[str, Any]) -> ExecutionOutcome:
        """Run through the system's adapter. Adapter errors become a failed outcome."""
        adapter = self.get(system)
        if adapter is None:
            return ExecutionOutcome(
                system=system,
                action=action,
                success=False,
                error=f"No adapter registered for {system}",
            )
        try:
            return adapter.execute(system, action, payload)
        except Exception as e:
            logger.error(f"Adapter for {system} failed on {action}: {e}")
            return ExecutionOutcome(system=system, action=action, success=False, error=str(e))
