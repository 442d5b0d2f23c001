"""AIF Governance - control plane for autonomous agents.

Deterministic risk tiering, per-tier controls, an AUTO/HOTL/HITL decision
gate, time-boxed tier overrides and a hash-chained audit ledger.
"""

__version__ = "1.0.0"
