"""Intent building and signal extraction.

Callers may hand over a structured intent, a free-text problem statement, or
nothing at all. Free text goes through a ``SignalExtractor``; extraction is
advisory and can never block tiering. If the extractor fails, the
conservative intent (PII, cross-border) is used so the agent lands in a
higher tier rather than a lower one.
"""

import logging
import re
from typing import Iterable, List, Optional, Protocol

from pydantic import BaseModel

from aif_governance.common.constants import IntentConstants
from aif_governance.common.exceptions import ValidationError
from aif_governance.governance.schemas import DataSensitivity, Intent

logger = logging.getLogger(__name__)


class PartialIntent(BaseModel):
    """Signals inferred from text; unset fields fall back to defaults."""
    actions: Optional[List[str]] = None
    systems: Optional[List[str]] = None
    data_sensitivity: Optional[DataSensitivity] = None
    cross_border: Optional[bool] = None


class SignalExtractor(Protocol):
    """Turns a problem statement into intent signals."""

    def infer(self, text: str) -> PartialIntent:
        ...


class KeywordSignalExtractor:
    """Deterministic keyword heuristics over the problem statement."""

    WRITE_VERBS = re.compile(r"\b(update|write|create|submit|change|delete|approve|send)\b")
    HR_SYSTEMS = re.compile(r"\b(workday|hr|employee|onboarding)\b")
    PII_TERMS = re.compile(r"\b(pii|sin|ssn|passport|medical|claim|benefit)\b")
    CROSS_BORDER = re.compile(r"\b(cross[- ]border|international|outside canada|eu|uk|us)\b")

    def infer(self, text: str) -> PartialIntent:
        text = (text or "").lower()
        partial = PartialIntent()

        if self.WRITE_VERBS.search(text):
            partial.actions = ["update_record"]
            partial.systems = ["salesforce"]
        if self.HR_SYSTEMS.search(text):
            partial.systems = ["workday"]
        if self.PII_TERMS.search(text):
            partial.data_sensitivity = DataSensitivity.PII
        if self.CROSS_BORDER.search(text):
            partial.cross_border = True

        return partial


CONSERVATIVE_PARTIAL = PartialIntent(
    data_sensitivity=DataSensitivity.PII,
    cross_border=True,
)


def build_intent(
    actions: Optional[Iterable[str]] = None,
    systems: Optional[Iterable[str]] = None,
    data_sensitivity: Optional[str] = None,
    cross_border: Optional[bool] = None,
    problem_statement: Optional[str] = None,
    extractor: Optional[SignalExtractor] = None,
) -> Intent:
    """Normalize caller input into an Intent with conservative defaults.

    Explicit fields always win over inferred ones. The problem statement is
    only consulted when no actions were supplied.

    Raises:
        ValidationError: if ``data_sensitivity`` is not a known class.
    """
    actions = [a for a in (actions or []) if str(a).strip()]
    systems = [s for s in (systems or []) if str(s).strip()]

    sensitivity: Optional[DataSensitivity] = None
    if data_sensitivity is not None:
        try:
            sensitivity = DataSensitivity(str(data_sensitivity).strip().upper())
        except ValueError as e:
            raise ValidationError(
                f"Unknown data sensitivity: {data_sensitivity}",
                details={"allowed": [d.value for d in DataSensitivity]},
            ) from e

    partial = PartialIntent()
    if not actions and problem_statement and problem_statement.strip():
        extractor = extractor or KeywordSignalExtractor()
        try:
            partial = extractor.infer(problem_statement)
        except Exception as e:
            logger.warning(f"Signal extraction failed, using conservative intent: {e}")
            partial = CONSERVATIVE_PARTIAL

    return Intent(
        actions=actions or partial.actions or list(IntentConstants.DEFAULT_ACTIONS),
        systems=systems or partial.systems or list(IntentConstants.DEFAULT_SYSTEMS),
        data_sensitivity=(
            sensitivity
            or partial.data_sensitivity
            or DataSensitivity(IntentConstants.DEFAULT_DATA_SENSITIVITY)
        ),
        cross_border=bool(
            cross_border if cross_border is not None else partial.cross_border
        ),
    )


def complete_intent(
    intent: Optional[Intent] = None,
    problem_statement: Optional[str] = None,
    extractor: Optional[SignalExtractor] = None,
) -> Intent:
    """Use a structured intent as-is when it names actions, else fill it in."""
    if intent is not None and intent.actions:
        return intent
    return build_intent(
        actions=intent.actions if intent else None,
        systems=intent.systems if intent else None,
        data_sensitivity=intent.data_sensitivity.value if intent else None,
        cross_border=intent.cross_border if intent else None,
        problem_statement=problem_statement,
        extractor=extractor,
    )
