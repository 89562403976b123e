"""Document editor — offset-tracked sequential application of rewrites.

Every applied rewrite is recorded as an :class:`Edit`.  A recommendation
addresses the document state of the round that produced it, so before it is
applied its span is mapped through the edits made since; the target must
then match a freshly parsed unit *exactly*, otherwise it is stale.

The optimizer simulates with this editor and the orchestrator rewrites with
it, which keeps predicted and applied offsets identical.  When the actual
rewrites deviate from the simulation, :class:`PlanAlignment` translates
planned offsets into the actual document.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from miair_engine.domain.entities import (
    Document,
    DocumentFormat,
    Recommendation,
    RecommendationAction,
    StructuralUnit,
    UnitKind,
)
from miair_engine.domain.ports.sensitivity_classifier import SensitivityClassifier
from miair_engine.domain.value_objects import Edit, Span
from miair_engine.services.document_parser import notebook_view, parse, render_notebook
from miair_engine.services.rewrite_rules import apply_rule
from miair_engine.services.sensitivity import label_units

# ── Splicing ────────────────────────────────────────────────────────────────


def splice(document: Document, span: Span, replacement: str) -> tuple[Document, Span]:
    """Replace ``span`` of the body with *replacement*.

    Removing a unit (empty replacement) also absorbs the newlines that
    followed it, never crossing a notebook cell boundary.  Returns the new
    document and the span that was actually replaced.
    """
    if document.format is DocumentFormat.NOTEBOOK:
        view = notebook_view(document)
        body = view.text
        position = next(
            (
                i
                for i, cell in enumerate(view.cells)
                if cell.span.start <= span.start and span.end <= cell.span.end
            ),
            None,
        )
        if position is None:
            raise ValueError(f"Span [{span.start}, {span.end}) crosses a notebook cell boundary")
        limit = view.cells[position].span.end
    else:
        body = document.text
        limit = len(body)

    end = span.end
    if not replacement:
        while end < limit and body[end] == "\n":
            end += 1
    replaced = Span(span.start, end)

    if document.format is DocumentFormat.NOTEBOOK:
        sources = [body[c.span.start : c.span.end] for c in view.cells]
        offset = view.cells[position].span.start
        source = sources[position]
        sources[position] = (
            source[: replaced.start - offset] + replacement + source[replaced.end - offset :]
        )
        return document.with_text(render_notebook(view, sources)), replaced

    return document.with_text(body[: replaced.start] + replacement + body[replaced.end :]), replaced


def locate(units: Sequence[StructuralUnit], span: Span) -> StructuralUnit | None:
    """The unit occupying exactly *span*, if any."""
    for unit in units:
        if unit.span == span:
            return unit
        if unit.span.start > span.start:
            break
    return None


def section_anchor(units: Sequence[StructuralUnit], fmt: DocumentFormat) -> StructuralUnit | None:
    """Unit after which a new section is appended (the last prose-capable unit)."""
    if fmt is DocumentFormat.NOTEBOOK:
        # code cells cannot host markdown
        candidates = [u for u in units if u.kind is not UnitKind.CODE_BLOCK]
        return candidates[-1] if candidates else None
    return units[-1] if units else None


# ── Editor ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Checkpoint:
    document: Document
    edits: tuple[Edit, ...]


class DocumentEditor:
    """Mutable editing session over an immutable :class:`Document`."""

    def __init__(
        self, document: Document, classifier: SensitivityClassifier | None = None
    ) -> None:
        self._document = document
        self._classifier = classifier
        self._edits: list[Edit] = []
        self._units: list[StructuralUnit] | None = None

    @property
    def document(self) -> Document:
        return self._document

    @property
    def edits(self) -> tuple[Edit, ...]:
        return tuple(self._edits)

    @property
    def units(self) -> list[StructuralUnit]:
        """Units of the current state (re-parsed after every edit)."""
        if self._units is None:
            units = parse(self._document)
            if self._classifier is not None:
                units = label_units(units, self._classifier)
            self._units = units
        return self._units

    def map_span(self, recommendation: Recommendation) -> Span | None:
        """Where the recommendation's span lives now, or ``None`` if overwritten."""
        span: Span | None = recommendation.span
        for edit in self._edits:
            if edit.round < recommendation.round:
                continue
            span = span.through(edit)
            if span is None:
                return None
        return span

    def target(self, recommendation: Recommendation) -> StructuralUnit | None:
        """Resolve the unit *recommendation* should be applied to."""
        if recommendation.action is RecommendationAction.ADD_SECTION:
            return section_anchor(self.units, self._document.format)
        return self.unit_at(self.map_span(recommendation), recommendation.target_kind)

    def unit_at(self, span: Span | None, kind: UnitKind) -> StructuralUnit | None:
        """The current unit of *kind* occupying exactly *span*."""
        if span is None:
            return None
        unit = locate(self.units, span)
        if unit is None or unit.kind is not kind:
            return None
        return unit

    def replace(self, unit: StructuralUnit, text: str, round: int = 1) -> Edit:
        """Substitute *unit*'s text and record the edit."""
        self._document, replaced = splice(self._document, unit.span, text)
        edit = Edit(replaced, len(text), round)
        self._edits.append(edit)
        self._units = None
        return edit

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(self._document, tuple(self._edits))

    def restore(self, checkpoint: Checkpoint) -> None:
        self._document = checkpoint.document
        self._edits = list(checkpoint.edits)
        self._units = None


# ── Plan alignment ──────────────────────────────────────────────────────────


class PlanAlignment:
    """Offset correspondence between the planned and the actual document.

    Recommendations address the *planned* document, in which every rewrite
    applied exactly as simulated.  Wherever a rewrite failed, was skipped or
    came back different, the actual document disagrees with the plan.  Those
    places are kept as pairs of corresponding regions; text outside them is
    identical in both documents, only shifted.
    """

    def __init__(self) -> None:
        self._regions: list[tuple[Span, Span]] = []  # (planned, actual), in order

    @property
    def regions(self) -> tuple[tuple[Span, Span], ...]:
        return tuple(self._regions)

    def _convert(self, pos: int, *, end: bool) -> int:
        shift = 0
        for planned, actual in self._regions:
            # an insertion at *pos* lies after a span ending there, before one starting there
            if planned.end < pos or (planned.end == pos and (not end or planned.start < pos)):
                shift += actual.length - planned.length
        return pos + shift

    def project(self, span: Span) -> Span:
        """Best-effort position of a planned span in the actual document."""
        start = self._convert(span.start, end=False)
        return Span(start, max(start, self._convert(span.end, end=True)))

    def to_actual(self, span: Span) -> Span | None:
        """The actual span holding the same text as planned *span*, or ``None``."""
        if any(planned.overlaps(span) for planned, _ in self._regions):
            return None
        return self.project(span)

    def record(self, planned: Edit, actual: Edit, *, identical: bool) -> None:
        """Account for one recommendation: *planned* changed the plan, *actual* the document."""
        ps, pe = planned.span.start, planned.span.end
        as_, ae = actual.span.start, actual.span.end
        absorbed: set[int] = set()
        grown = True
        while grown:
            grown = False
            for i, (p, a) in enumerate(self._regions):
                if i in absorbed:
                    continue
                if (p.start <= pe and ps <= p.end) or (a.start <= ae and as_ <= a.end):
                    absorbed.add(i)
                    ps, pe = min(ps, p.start), max(pe, p.end)
                    as_, ae = min(as_, a.start), max(ae, a.end)
                    grown = True

        regions: list[tuple[Span, Span]] = []
        for i, (p, a) in enumerate(self._regions):
            if i in absorbed:
                continue
            if p.start >= pe:
                p = Span(p.start + planned.delta, p.end + planned.delta)
            if a.start >= ae:
                a = Span(a.start + actual.delta, a.end + actual.delta)
            regions.append((p, a))
        if absorbed or not identical:
            regions.append((Span(ps, pe + planned.delta), Span(as_, ae + actual.delta)))
        regions.sort(key=lambda pair: (pair[0].start, pair[0].end))
        self._regions = regions


# ── Public API ──────────────────────────────────────────────────────────────


def apply_recommendations(
    document: Document, recommendations: Iterable[Recommendation]
) -> Document:
    """Replay *recommendations* in order with the deterministic rules.

    Stale recommendations are skipped, exactly as during enhancement.
    """
    editor = DocumentEditor(document)
    for rec in recommendations:
        unit = editor.target(rec)
        if unit is None:
            continue
        editor.replace(unit, apply_rule(unit.text, rec), rec.round)
    return editor.document
