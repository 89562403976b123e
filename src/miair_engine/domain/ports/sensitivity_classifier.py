"""Port: sensitivity classifier — resolves a routing label for each unit."""

from __future__ import annotations

from typing import Protocol

from miair_engine.domain.entities import SensitivityLabel, StructuralUnit


class SensitivityClassifier(Protocol):
    """Abstract contract for marker-based, heuristic or combined detection."""

    def classify(self, unit: StructuralUnit) -> SensitivityLabel:
        """Return the label the unit should be routed under."""
        ...
