"""Port: rewrite backend — defined by the domain, implemented by infrastructure."""

from __future__ import annotations

from typing import Protocol

from miair_engine.domain.entities import BackendKind, Recommendation


class RewriteBackend(Protocol):
    """Abstract contract for a capability that rewrites one unit of text.

    The engine never inspects how a backend works; routing only needs
    :attr:`kind` to decide whether content may leave the machine.
    """

    name: str
    kind: BackendKind

    async def rewrite(self, unit_text: str, recommendation: Recommendation) -> str:
        """Return the rewritten unit text (``""`` removes the unit).

        Raises :class:`~miair_engine.domain.exceptions.BackendUnavailableError`
        when the unit cannot be processed.
        """
        ...
