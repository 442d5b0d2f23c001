"""Shared fixtures: a small policy pack, a controllable clock and a service."""

import copy
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from aif_governance.api.service import GovernanceService
from aif_governance.common.config import Config
from aif_governance.governance.audit.storage import InMemoryStorage
from aif_governance.governance.policies.loader import StaticPolicySource, parse_policy_pack


FIXED_NOW = datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)


PACK_DOC = {
    "version": "test-1.0",
    "generatedAt": "2026-01-27T00:00:00Z",
    "tiers": [
        {"tier": "A1", "defaultControls": {"logging": True, "auditLevel": "minimal"}},
        {"tier": "A2", "defaultControls": {"logging": True}},
        {"tier": "A3", "defaultControls": {"logging": True, "piiRedaction": True}},
        {
            "tier": "A4",
            "defaultControls": {"logging": True, "piiRedaction": True, "humanInLoop": True},
        },
        {
            "tier": "A5",
            "defaultControls": {
                "logging": True,
                "piiRedaction": True,
                "humanInLoop": True,
                "approvalRequired": True,
                "auditLevel": "full",
            },
        },
        {
            "tier": "A6",
            "defaultControls": {
                "logging": True,
                "approvalRequired": True,
                "sandboxOnly": True,
                "killSwitchRequired": True,
            },
        },
    ],
    "tiering": {
        "mergeStrategy": "MAX_TIER",
        "tierOrder": ["A1", "A2", "A3", "A4", "A5", "A6"],
        "rules": [
            {
                "id": "R-READ-ONLY",
                "if": {"actionsOnly": ["retrieve", "search"]},
                "thenTier": "A1",
                "rationale": "Agent only reads",
            },
            {
                "id": "R-CONFIDENTIAL",
                "if": {"dataSensitivityIn": ["CONFIDENTIAL"]},
                "thenTier": "A3",
            },
            {
                "id": "R-WRITE",
                "if": {"actionsAny": ["update_record", "create_record"]},
                "thenTier": "A4",
                "rationale": "Writes to a system of record",
            },
            {
                "id": "R-PII",
                "if": {"dataSensitivityIn": ["PII"]},
                "thenTier": "A5",
                "rationale": "Handles personal data",
            },
            {
                "id": "R-CROSS-BORDER",
                "if": {"crossBorder": True},
                "thenTier": "A5",
            },
            {
                "id": "R-PRIVILEGED",
                "if": {"actionsAny": ["delete_record"]},
                "thenTier": "A6",
            },
        ],
    },
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def pack_doc():
    """A fresh, mutable copy of the test pack document."""
    return copy.deepcopy(PACK_DOC)


@pytest.fixture
def pack(pack_doc):
    return parse_policy_pack(pack_doc)


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def policy_file(temp_dir, pack_doc):
    """The test pack written as YAML."""
    path = f"{temp_dir}/policy_pack.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(pack_doc, f)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def service(config, storage, pack, clock):
    """GovernanceService over in-memory storage and the test pack."""
    return GovernanceService(
        config=config,
        storage=storage,
        policy_source=StaticPolicySource(pack),
        clock=clock,
    )


@pytest.fixture
def make_agent(service):
    """Register (and by default approve) an agent with the given intent."""

    def _make(actions=("retrieve",), systems=("kb",), data_sensitivity="INTERNAL",
              cross_border=False, approve=True, **kwargs):
        from aif_governance.governance.schemas import Intent

        intent = Intent(
            actions=list(actions),
            systems=list(systems),
            data_sensitivity=data_sensitivity,
            cross_border=cross_border,
        )
        agent = service.register_agent(
            name=kwargs.pop("name", "test agent"),
            owner=kwargs.pop("owner", "alice"),
            intent=intent,
            **kwargs,
        )
        if approve:
            agent = service.approve_agent(agent.id, "governance-lead")
        return agent

    return _make
