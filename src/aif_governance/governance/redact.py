"""Audit redaction - strip secrets and obvious PII before anything is logged.

Kept conservative: secret-looking keys are blanked entirely, and string
values are scrubbed for bearer tokens, e-mail addresses and long opaque
tokens. Identities that must stay correlatable are pseudonymized with
``hash_identity``.
"""

import hashlib
import re
from typing import Any, Iterable, Protocol

from aif_governance.common.constants import DataConstants

REDACTED = "[REDACTED]"
REDACTED_EMAIL = "[REDACTED_EMAIL]"
REDACTED_TOKEN = "[REDACTED_TOKEN]"

SECRET_KEYS = (
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api-key",
    "api_key",
    "token",
    "access_token",
    "refresh_token",
    "password",
    "secret",
)

_EMAIL = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_BEARER = re.compile(r"\bBearer\s+[A-Za-z0-9._\-]+\b", re.IGNORECASE)
_LONG_TOKEN = re.compile(r"\b[A-Za-z0-9_\-]{32,}\b")

# State is replayed from ledger payloads, so identifiers and the structural
# fields of agents, decisions and overrides must survive intact. Free text
# (names, reasons, notes, execution payloads) is still scrubbed.
PRESERVED_KEYS = (
    "id",
    "agent_id",
    "decision_id",
    "override_id",
    "matched_rule_ids",
    "policy_version",
    "owner",
    "action",
    "target",
    "system",
    "actions",
    "systems",
    "data_sensitivity",
    "tier",
    "requested_tier",
    "from_tier",
    "tier_source",
    "allowed_tools",
    "status",
    "from_status",
    "to_status",
    "control_mode",
    "outcome",
    "environment",
    "actor",
    "requested_by",
    "approved_by",
    "rejected_by",
    "revoked_by",
    "decided_by",
)


class Redactor(Protocol):
    def redact(self, payload: Any) -> Any:
        ...


class AuditRedactor:
    """Deep redactor for ledger payloads."""

    def __init__(
        self,
        secret_keys: Iterable[str] = SECRET_KEYS,
        preserved_keys: Iterable[str] = PRESERVED_KEYS,
    ):
        self.secret_keys = tuple(k.lower() for k in secret_keys)
        self.preserved_keys = frozenset(preserved_keys)

    def _is_secret_key(self, key: str) -> bool:
        lk = key.lower()
        return any(lk == sk or lk.endswith(sk) for sk in self.secret_keys)

    def redact_string(self, value: str) -> str:
        value = _BEARER.sub("Bearer " + REDACTED, value)
        value = _EMAIL.sub(REDACTED_EMAIL, value)
        return _LONG_TOKEN.sub(REDACTED_TOKEN, value)

    def redact(self, payload: Any) -> Any:
        if isinstance(payload, str):
            return self.redact_string(payload)
        if isinstance(payload, dict):
            out = {}
            for k, v in payload.items():
                if self._is_secret_key(str(k)):
                    out[k] = REDACTED
                elif k in self.preserved_keys:
                    out[k] = v
                else:
                    out[k] = self.redact(v)
            return out
        if isinstance(payload, (list, tuple)):
            return [self.redact(v) for v in payload]
        return payload


class NoopRedactor:
    """Pass-through redactor for callers that redact upstream."""

    def redact(self, payload: Any) -> Any:
        return payload


def hash_identity(value: str) -> str:
    """Stable pseudonym for a person: truncated SHA-256 of the lower-cased value."""
    digest = hashlib.sha256((value or "").lower().encode("utf-8")).hexdigest()
    return digest[:DataConstants.IDENTITY_HASH_LENGTH]
