"""Local rules adapter — implements the RewriteBackend port without a model.

Applies the same deterministic rules the optimizer simulates with, so every
recommendation lands exactly as predicted.  Content never leaves the process.
"""

from __future__ import annotations

from miair_engine.domain.entities import BackendKind, Recommendation
from miair_engine.services.rewrite_rules import apply_rule


class LocalRulesBackend:
    """Concrete ``RewriteBackend`` backed by :mod:`miair_engine.services.rewrite_rules`."""

    kind = BackendKind.LOCAL

    def __init__(self, name: str = "local-rules") -> None:
        self.name = name

    async def rewrite(self, unit_text: str, recommendation: Recommendation) -> str:
        return apply_rule(unit_text, recommendation)
