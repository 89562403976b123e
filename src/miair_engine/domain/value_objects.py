"""Value objects — self-validating domain primitives."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Span:
    """Half-open character range ``[start, end)`` inside a document body."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid span [{self.start}, {self.end})")

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: Span) -> bool:
        return self.start < other.end and other.start < self.end

    def through(self, edit: Edit) -> Span | None:
        """Return where this span lives after *edit*, or ``None`` if it is gone.

        A span equal to the edited range follows the rewrite; a span that only
        partially overlaps it no longer addresses a whole unit.
        """
        if self == edit.span:
            if edit.replacement_length == 0:
                return None
            return Span(edit.span.start, edit.span.start + edit.replacement_length)
        if self.end <= edit.span.start:
            return self
        if self.start >= edit.span.end:
            return Span(self.start + edit.delta, self.end + edit.delta)
        return None


@dataclass(frozen=True, slots=True)
class Edit:
    """One applied rewrite: *span* (pre-edit coordinates) replaced by new text."""

    span: Span
    replacement_length: int
    round: int = 1

    @property
    def delta(self) -> int:
        return self.replacement_length - self.span.length
