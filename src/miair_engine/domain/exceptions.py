"""Domain exception hierarchy.

Every error carries a stable ``kind`` string and, where one applies, the
index of the offending structural unit.  Callers outside the engine (CLI,
HTTP, batch reports) surface :meth:`MiairError.to_dict` rather than a stack.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from miair_engine.domain.entities import EntropyMeasurement, Recommendation


class MiairError(Exception):
    """Base exception for the entire engine."""

    kind = "miair_error"

    def __init__(self, message: str, *, unit_index: int | None = None) -> None:
        super().__init__(message)
        self.unit_index = unit_index
        self.stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "unit": self.unit_index}


# ── Input ───────────────────────────────────────────────────────────────────


class MalformedInputError(MiairError):
    """The document is empty, binary, or yields no structural units."""

    kind = "malformed_input"


class LargeInputWarning(UserWarning):
    """Advisory: the document exceeds the large-input threshold."""

    kind = "large_input"

    def __init__(self, size_bytes: int, threshold: int) -> None:
        super().__init__(
            f"Document is {size_bytes} bytes (threshold {threshold}); analysis may be slow."
        )
        self.size_bytes = size_bytes
        self.threshold = threshold


# ── Optimizer ───────────────────────────────────────────────────────────────


class OptimizationTimeoutError(MiairError):
    """The optimizer exhausted its budget before reaching a stable result.

    ``recommendations`` and ``entropy`` hold the best-effort output produced
    so far.  ``hard`` is set when the wall-clock ceiling was hit rather than
    the iteration budget.
    """

    kind = "optimization_timeout"

    def __init__(
        self,
        message: str,
        *,
        recommendations: tuple[Recommendation, ...] = (),
        entropy: EntropyMeasurement | None = None,
        hard: bool = False,
    ) -> None:
        super().__init__(message)
        self.recommendations = recommendations
        self.entropy = entropy
        self.hard = hard


# ── Enhancement ─────────────────────────────────────────────────────────────


class BackendUnavailableError(MiairError):
    """A rewrite backend could not process a unit (down, timed out, refused)."""

    kind = "backend_unavailable"


class RoutingPolicyViolationError(MiairError):
    """A routing decision would send content to a backend the policy forbids."""

    kind = "routing_policy_violation"
