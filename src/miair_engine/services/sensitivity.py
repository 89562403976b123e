"""Sensitivity classifiers — implementations of the SensitivityClassifier port.

Three strategies share one boundary so the orchestrator never changes:

* :class:`MarkerClassifier` trusts explicit region markers only.
* :class:`HeuristicClassifier` ignores markers and looks at the content.
* :class:`CombinedClassifier` lets markers win and falls back to heuristics.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Sequence

from miair_engine.domain.entities import SensitivityLabel, StructuralUnit
from miair_engine.domain.ports.sensitivity_classifier import SensitivityClassifier
from miair_engine.services.security_sentinel import find_secrets

_SENSITIVE_PHRASES = re.compile(
    r"\b(?:confidential|internal[\s-]only|proprietary|do\s+not\s+distribute|"
    r"not\s+for\s+(?:public\s+)?release|trade\s+secret|under\s+nda|restricted\s+access)\b",
    re.IGNORECASE,
)
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PRIVATE_HOST_RE = re.compile(
    r"\b(?:10\.\d{1,3}|192\.168|172\.(?:1[6-9]|2\d|3[01]))\.\d{1,3}\.\d{1,3}\b"
    r"|\b[\w-]+\.(?:internal|corp|intranet|local)\b",
    re.IGNORECASE,
)


class MarkerClassifier:
    """Use the label resolved from explicit markers; unmarked stays unlabeled."""

    def classify(self, unit: StructuralUnit) -> SensitivityLabel:
        return unit.marker


class HeuristicClassifier:
    """Flag units that leak secrets, confidentiality notices or private infrastructure."""

    def classify(self, unit: StructuralUnit) -> SensitivityLabel:
        text = unit.text
        if (
            find_secrets(text)
            or _SENSITIVE_PHRASES.search(text)
            or _EMAIL_RE.search(text)
            or _PRIVATE_HOST_RE.search(text)
        ):
            return SensitivityLabel.SENSITIVE
        return SensitivityLabel.PUBLIC


class CombinedClassifier:
    """Explicit markers first, heuristics for everything unmarked."""

    def __init__(self, fallback: SensitivityClassifier | None = None) -> None:
        self._fallback = fallback or HeuristicClassifier()

    def classify(self, unit: StructuralUnit) -> SensitivityLabel:
        if unit.marker is not SensitivityLabel.UNLABELED:
            return unit.marker
        return self._fallback.classify(unit)


def label_units(
    units: Sequence[StructuralUnit], classifier: SensitivityClassifier
) -> list[StructuralUnit]:
    """Return copies of *units* carrying the classifier's resolved label."""
    return [replace(u, sensitivity=classifier.classify(u)) for u in units]


def sensitivity_density(units: Sequence[StructuralUnit]) -> float:
    """Byte-weighted share of units that may not leave the machine (0-1)."""
    total = sum(u.span.length for u in units)
    if total == 0:
        return 1.0
    restricted = sum(u.span.length for u in units if u.sensitivity.is_restricted)
    return restricted / total
