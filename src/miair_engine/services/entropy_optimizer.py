"""Entropy optimizer (MIAIR core) — ranked, verified recommendations.

The optimizer works on a simulated copy of the document, in rounds:

1. Generate candidates from the per-unit entropy breakdown of the current
   simulated state.  A candidate's *predicted* reduction is the disorder its
   rule removes from its target unit.
2. Sort by predicted reduction (descending; ties by document order, then
   action).
3. Verify each candidate in that order by applying it with the same editor
   and rules the orchestrator uses.  Stale candidates and candidates that do
   not lower the measured entropy are dropped.

Rounds repeat until one accepts nothing.  Priorities are capped so they never
increase down the list; recommendations tied by the cap are put in document
order when that replays to the same result.  Because the final order is
verified as a whole, replaying the list lowers the entropy at every prefix.
Missing expected sections are appended last with zero predicted reduction.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from miair_engine.domain.entities import (
    Document,
    EntropyMeasurement,
    Recommendation,
    RecommendationAction,
    ScoreVector,
    StructuralUnit,
    UnitKind,
)
from miair_engine.domain.exceptions import MalformedInputError, OptimizationTimeoutError
from miair_engine.domain.value_objects import Edit, Span
from miair_engine.services import entropy
from miair_engine.services.document_editor import DocumentEditor, section_anchor
from miair_engine.services.document_parser import render_section
from miair_engine.services.quality_scorer import missing_sections
from miair_engine.services.rewrite_rules import apply_rule
from miair_engine.services.security_sentinel import find_hazards, find_secrets

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
_EPSILON = 1e-6

_ACTION_ORDER: dict[RecommendationAction, int] = {
    action: i for i, action in enumerate(RecommendationAction)
}


@dataclass(frozen=True, slots=True)
class _Candidate:
    action: RecommendationAction
    unit: StructuralUnit
    predicted: float
    message: str
    details: tuple[str, ...] = ()
    related: tuple[int, ...] = ()

    @property
    def sort_key(self) -> tuple[float, int, int]:
        return (-self.predicted, self.unit.span.start, _ACTION_ORDER[self.action])

    def to_recommendation(self, round_no: int) -> Recommendation:
        return Recommendation(
            rank=0,
            action=self.action,
            unit_indices=(self.unit.index, *self.related),
            span=self.unit.span,
            target_kind=self.unit.kind,
            priority=round(self.predicted, 6),
            message=self.message,
            details=self.details,
            round=round_no,
        )


# ── Candidate generation ────────────────────────────────────────────────────


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def generate_candidates(
    units: Sequence[StructuralUnit],
    *,
    include_security: bool = True,
) -> list[_Candidate]:
    """One candidate per (unit, disorder component) with a positive term."""
    redundant = entropy.redundancy_map(units)
    candidates: list[_Candidate] = []

    for unit in units:
        part = entropy.unit_entropy(unit, redundant.get(unit.index))
        kind = unit.kind.value.replace("_", " ")

        duplicate = redundant.get(unit.index)
        if duplicate is not None and part.redundancy > 0:
            candidates.append(
                _Candidate(
                    RecommendationAction.REMOVE_DUPLICATE,
                    unit,
                    part.total,
                    f"Remove this {kind}: it repeats unit {duplicate.canonical} "
                    f"({duplicate.similarity:.0%} overlap).",
                    (f"canonical unit {duplicate.canonical}",),
                    related=(duplicate.canonical,),
                )
            )

        if include_security and part.noise > 0:
            labels = tuple(sorted({label for label, _ in find_secrets(unit.text)}))
            candidates.append(
                _Candidate(
                    RecommendationAction.REDACT_SECRET,
                    unit,
                    part.noise,
                    f"Redact {_plural(len(find_secrets(unit.text)), 'leaked secret')} "
                    f"({', '.join(labels)}).",
                    labels,
                )
            )

        if include_security and part.hazard > 0:
            hazards = find_hazards(unit.text)
            labels = tuple(sorted({h.label for h in hazards}))
            candidates.append(
                _Candidate(
                    RecommendationAction.FLAG_UNSAFE_COMMAND,
                    unit,
                    part.hazard,
                    f"Mark {_plural(len(hazards), 'hazardous instruction')} with a review "
                    f"warning ({', '.join(labels)}).",
                    labels,
                )
            )

        if part.sprawl > 0:
            words = len(entropy.tokenize(unit.content))
            candidates.append(
                _Candidate(
                    RecommendationAction.SPLIT_PARAGRAPH,
                    unit,
                    part.sprawl,
                    f"Split this {words}-word paragraph into paragraphs of at most "
                    f"{entropy.LONG_PARAGRAPH_WORDS} words.",
                )
            )

        if part.ambiguity > 0:
            terms = tuple(sorted(set(entropy.vague_terms(unit.content))))
            candidates.append(
                _Candidate(
                    RecommendationAction.CLARIFY_WORDING,
                    unit,
                    part.ambiguity,
                    f"Replace vague wording: {', '.join(terms)}.",
                    terms,
                )
            )

    return candidates


def _back(pos: int, edit: Edit, *, end: bool) -> int:
    """Position before *edit* of *pos*; positions inside the new text map to the replaced range."""
    start = edit.span.start
    stop = start + edit.replacement_length
    if pos > stop or (pos == stop and (stop > start or not end)):
        return pos - edit.delta
    if pos <= start:
        return pos
    return edit.span.end if end else edit.span.start


def _original_ranges(edits: Sequence[Edit]) -> list[Span]:
    """Where each edit falls in the input document."""
    ranges: list[Span] = []
    for i, edit in enumerate(edits):
        start, end = edit.span.start, edit.span.end
        for earlier in reversed(edits[:i]):
            start = _back(start, earlier, end=False)
            end = _back(end, earlier, end=True)
        ranges.append(Span(start, max(start, end)))
    return ranges


def _disjoint(ranges: Sequence[Span]) -> bool:
    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    return all(a.end <= b.start for a, b in zip(ordered, ordered[1:]))


def _section_level(units: Sequence[StructuralUnit]) -> int:
    """Level for an appended section: below a lone title, else beside the top headings."""
    levels = [u.level for u in units if u.kind is UnitKind.HEADING]
    if not levels:
        return 2
    top = min(levels)
    return top + 1 if levels.count(top) == 1 else top


# ── Optimizer ───────────────────────────────────────────────────────────────


class EntropyOptimizer:
    """Iterative entropy reduction over a simulated document.

    Parameters
    ----------
    max_iterations:
        Refinement rounds allowed before giving up on a stable result.
    hard_timeout:
        Wall-clock ceiling in seconds (``None`` disables it).
    clock:
        Monotonic time source; only consulted for the hard timeout.
    """

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        hard_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._max_iterations = max_iterations
        self._hard_timeout = hard_timeout
        self._clock = clock

    def optimize(
        self,
        document: Document,
        units: Sequence[StructuralUnit],
        scores: ScoreVector,
    ) -> tuple[EntropyMeasurement, list[Recommendation]]:
        """Return the achieved entropy (``prior`` = input entropy) and ranked recommendations.

        Raises :class:`OptimizationTimeoutError` carrying the best-effort
        result when no stable round is reached within the budget.
        """
        deadline = None if self._hard_timeout is None else self._clock() + self._hard_timeout
        prior = entropy.measure(units).value
        editor = DocumentEditor(document)
        current = prior
        emitted: list[Recommendation] = []
        cap = math.inf
        include_security = scores.security < 100.0
        stable = False
        rounds = 0

        for round_no in range(1, self._max_iterations + 1):
            rounds = round_no
            candidates = sorted(
                generate_candidates(editor.units, include_security=include_security),
                key=lambda c: c.sort_key,
            )
            accepted = 0
            for candidate in candidates:
                if deadline is not None and self._clock() > deadline:
                    raise self._timeout(
                        f"Hard timeout of {self._hard_timeout}s exceeded in round {round_no}",
                        emitted,
                        editor,
                        prior,
                        hard=True,
                    )
                rec = candidate.to_recommendation(round_no)
                checkpoint = editor.checkpoint()
                value = self._try(editor, rec)
                if value is None or current - value <= _EPSILON:
                    editor.restore(checkpoint)
                    continue
                current = value
                cap = min(cap, rec.priority)
                emitted.append(replace(rec, priority=cap))
                accepted += 1

            logger.debug(
                "Round %d: %d/%d candidates accepted, entropy %.3f",
                round_no,
                accepted,
                len(candidates),
                current,
            )
            if accepted == 0:
                stable = True
                break

        emitted, editor = self._order_ties(document, emitted, editor, prior)
        if not stable:
            raise self._timeout(
                f"No stable result after {self._max_iterations} refinement rounds",
                emitted,
                editor,
                prior,
            )

        if scores.completeness < 100.0:
            emitted.extend(self._section_recommendations(document, editor, current, rounds))

        ranked = [replace(rec, rank=i) for i, rec in enumerate(emitted, start=1)]
        achieved = entropy.measure(editor.units, prior=prior)
        logger.info(
            "Optimizer converged after %d rounds: %.3f -> %.3f bits, %d recommendations",
            rounds,
            prior,
            achieved.value,
            len(ranked),
        )
        return achieved, ranked

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    def _try(editor: DocumentEditor, rec: Recommendation) -> float | None:
        """Apply *rec* to the simulation; return the new entropy or ``None`` when it cannot apply."""
        unit = editor.target(rec)
        if unit is None:
            return None
        editor.replace(unit, apply_rule(unit.text, rec), rec.round)
        try:
            return entropy.measure(editor.units).value
        except MalformedInputError:
            return None

    def _section_recommendations(
        self,
        document: Document,
        editor: DocumentEditor,
        current: float,
        round_no: int,
    ) -> list[Recommendation]:
        recs: list[Recommendation] = []
        for section in missing_sections(editor.units, document.kind):
            anchor = section_anchor(editor.units, document.format)
            if anchor is None:
                break
            suggestion = render_section(
                document.format, section.title, section.stub, _section_level(editor.units)
            )
            rec = Recommendation(
                rank=0,
                action=RecommendationAction.ADD_SECTION,
                unit_indices=(anchor.index,),
                span=anchor.span,
                target_kind=anchor.kind,
                priority=0.0,
                message=f"Add a '{section.title}' section; a {document.kind.value} "
                f"document is expected to have one.",
                details=(section.title,),
                suggestion=suggestion,
                round=round_no,
            )
            checkpoint = editor.checkpoint()
            value = self._try(editor, rec)
            if value is None or value > current + _EPSILON:
                editor.restore(checkpoint)
                continue
            current = value
            recs.append(rec)
        return recs

    def _order_ties(
        self,
        document: Document,
        emitted: list[Recommendation],
        editor: DocumentEditor,
        prior: float,
    ) -> tuple[list[Recommendation], DocumentEditor]:
        """Put each run of equal priorities in document order where that replays identically.

        Capping makes later-round recommendations tie with earlier ones; a
        reordered run is kept only if every prefix still lowers the entropy
        and the final document is unchanged.
        """
        origins = _original_ranges(editor.edits)
        order = list(range(len(emitted)))
        best = editor
        i = 0
        while i < len(order):
            priority, j = emitted[order[i]].priority, i
            while j + 1 < len(order) and emitted[order[j + 1]].priority == priority:
                j += 1
            run = order[i : j + 1]
            ranked = sorted(run, key=lambda k: origins[k].start)
            if ranked != run and _disjoint([origins[k] for k in run]):
                trial = order[:i] + ranked + order[j + 1 :]
                replayed = self._replay(document, [emitted[k] for k in trial], prior)
                if replayed is not None and replayed.document == editor.document:
                    order, best = trial, replayed
            i = j + 1
        return [emitted[k] for k in order], best

    @staticmethod
    def _replay(
        document: Document, recs: Sequence[Recommendation], prior: float
    ) -> DocumentEditor | None:
        editor = DocumentEditor(document)
        current = prior
        for rec in recs:
            value = EntropyOptimizer._try(editor, rec)
            if value is None or current - value <= _EPSILON:
                return None
            current = value
        return editor

    @staticmethod
    def _timeout(
        message: str,
        emitted: list[Recommendation],
        editor: DocumentEditor,
        prior: float,
        *,
        hard: bool = False,
    ) -> OptimizationTimeoutError:
        ranked = tuple(replace(rec, rank=i) for i, rec in enumerate(emitted, start=1))
        logger.warning("%s; returning %d best-effort recommendations", message, len(ranked))
        return OptimizationTimeoutError(
            message,
            recommendations=ranked,
            entropy=entropy.measure(editor.units, prior=prior),
            hard=hard,
        )