"""Quality scoring — structural heuristics + section-graph balance.

Produces the performance, security and completeness dimensions of a
:class:`ScoreVector`.  The performance score combines heading hygiene and the
balance of the section tree (a ``networkx`` graph of headings and the units
they own) with paragraph, sentence and example heuristics.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass
from typing import Sequence

import networkx as nx  # type: ignore[import-untyped]

from miair_engine.domain.entities import (
    DocumentKind,
    EntropyMeasurement,
    ScoreVector,
    SecurityFinding,
    StructuralUnit,
    UnitKind,
)
from miair_engine.services.entropy import LONG_PARAGRAPH_WORDS, miair_score, tokenize

# ── Expected sections ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ExpectedSection:
    """A section a document kind should contain, with heading synonyms."""

    title: str
    pattern: re.Pattern[str]
    stub: str


def _expect(title: str, synonyms: str, stub: str) -> ExpectedSection:
    return ExpectedSection(title, re.compile(rf"\b(?:{synonyms})\b", re.IGNORECASE), stub)


_EXPECTED_SECTIONS: dict[DocumentKind, tuple[ExpectedSection, ...]] = {
    DocumentKind.README: (
        _expect(
            "Installation",
            r"install|installation|installing|setup|set up|getting started",
            "Describe how to install the project and list the supported platforms.",
        ),
        _expect(
            "Usage",
            r"usage|use|using|quickstart|quick start|examples?",
            "Show a minimal example of calling the project from start to finish.",
        ),
        _expect(
            "License",
            r"license|licence|licensing|copyright",
            "State the license under which this project is distributed.",
        ),
    ),
    DocumentKind.API_REFERENCE: (
        _expect(
            "Overview",
            r"overview|introduction|summary|description|about",
            "Summarize what this interface does and when to call it.",
        ),
        _expect(
            "Parameters",
            r"parameters?|params|arguments|args|options",
            "List each parameter with its type and meaning.",
        ),
        _expect(
            "Returns",
            r"returns?|return values?|response|output",
            "Describe the value returned on success.",
        ),
        _expect(
            "Examples",
            r"examples?|usage",
            "Add a short runnable example for the most common call.",
        ),
        _expect(
            "Errors",
            r"errors?|exceptions|raises|failures",
            "Document the errors this interface raises and what triggers them.",
        ),
    ),
    DocumentKind.TUTORIAL: (
        _expect(
            "Prerequisites",
            r"prerequisites|requirements|before you begin|what you need",
            "Name the tools a reader needs before starting.",
        ),
        _expect(
            "Steps",
            r"(?<!next )steps?|walkthrough|instructions|procedure",
            "Walk through the tutorial one numbered step at a time.",
        ),
        _expect(
            "Next Steps",
            r"next steps|what's next|further reading|where to go next",
            "Point readers to related guides once they finish this tutorial.",
        ),
    ),
    DocumentKind.CHANGELOG: (
        _expect(
            "Unreleased",
            r"unreleased|upcoming",
            "Record changes that are merged but not yet part of a release.",
        ),
    ),
    DocumentKind.GENERIC: (),
}

_PLACEHOLDER_RE = re.compile(r"\b(?:TODO|TBD|FIXME)\b")
_SENTENCE_END_RE = re.compile(r"[.!?]+(?:\s|$)")

_SECURITY_PENALTY: dict[str, float] = {
    "secret": 25.0,
    "unsafe_command": 15.0,
    "vulnerability": 10.0,
}
_PLACEHOLDER_PENALTY = 5.0
_EMPTY_SECTION_PENALTY = 5.0
_IDEAL_SENTENCE_WORDS = 25
_MAX_SECTION_DEPTH = 4

ROOT = -1


def expected_sections(kind: DocumentKind) -> tuple[ExpectedSection, ...]:
    return _EXPECTED_SECTIONS.get(kind, ())


# ── Section graph ───────────────────────────────────────────────────────────


def section_tree(units: Sequence[StructuralUnit]) -> nx.DiGraph:  # type: ignore[type-arg]
    """Directed tree: root → headings → (sub-headings | owned units).

    Nodes are unit indices plus :data:`ROOT`; heading nodes carry their
    ``level``.  A non-heading unit hangs off the innermost open heading.
    """
    graph: nx.DiGraph = nx.DiGraph()  # type: ignore[type-arg]
    graph.add_node(ROOT, level=0)
    open_headings: list[StructuralUnit] = []

    for unit in units:
        if unit.kind is UnitKind.HEADING:
            while open_headings and open_headings[-1].level >= unit.level:
                open_headings.pop()
            parent = open_headings[-1].index if open_headings else ROOT
            graph.add_node(unit.index, level=unit.level, heading=True)
            graph.add_edge(parent, unit.index)
            open_headings.append(unit)
        else:
            parent = open_headings[-1].index if open_headings else ROOT
            graph.add_node(unit.index, level=0, heading=False, words=len(tokenize(unit.content)))
            graph.add_edge(parent, unit.index)
    return graph


def empty_sections(graph: nx.DiGraph) -> list[int]:  # type: ignore[type-arg]
    """Heading nodes that own neither content nor sub-sections."""
    return [
        node
        for node, data in graph.nodes(data=True)
        if data.get("heading") and graph.out_degree(node) == 0
    ]


def _balance_score(graph: nx.DiGraph) -> float:  # type: ignore[type-arg]
    """1.0 for evenly sized sections at a readable depth."""
    sizes = [
        sum(graph.nodes[c].get("words", 0) for c in graph.successors(node))
        for node, data in graph.nodes(data=True)
        if data.get("heading")
    ]
    sizes = [s for s in sizes if s > 0]
    balance = 1.0
    if len(sizes) >= 2:
        mean = statistics.fmean(sizes)
        cv = statistics.pstdev(sizes) / mean if mean else 0.0
        balance = max(0.0, 1.0 - cv / 2)

    depths = nx.single_source_shortest_path_length(graph, ROOT)
    heading_depth = max(
        (d for n, d in depths.items() if graph.nodes[n].get("heading")), default=0
    )
    depth_penalty = 0.2 * max(0, heading_depth - _MAX_SECTION_DEPTH)
    return max(0.0, balance - depth_penalty)


# ── Performance heuristics ──────────────────────────────────────────────────


def _heading_score(units: Sequence[StructuralUnit]) -> float:
    """Penalise skipped heading levels (``#`` followed by ``###``)."""
    levels = [u.level for u in units if u.kind is UnitKind.HEADING]
    if not levels:
        return 0.6 if len(units) > 3 else 1.0
    jumps = sum(1 for a, b in zip(levels, levels[1:]) if b > a + 1)
    return 1.0 - jumps / max(1, len(levels) - 1)


def _paragraph_score(units: Sequence[StructuralUnit]) -> float:
    lengths = [len(tokenize(u.content)) for u in units if u.kind is UnitKind.PARAGRAPH]
    if not lengths:
        return 1.0
    scores = [
        1.0 if n <= LONG_PARAGRAPH_WORDS else max(0.0, 1.0 - (n - LONG_PARAGRAPH_WORDS) / 300)
        for n in lengths
    ]
    return statistics.fmean(scores)


def _sentence_score(units: Sequence[StructuralUnit]) -> float:
    words = 0
    sentences = 0
    for unit in units:
        if unit.kind is not UnitKind.PARAGRAPH:
            continue
        words += len(tokenize(unit.content))
        sentences += max(1, len(_SENTENCE_END_RE.findall(unit.content)))
    if sentences == 0:
        return 1.0
    average = words / sentences
    if average <= _IDEAL_SENTENCE_WORDS:
        return 1.0
    return max(0.0, 1.0 - (average - _IDEAL_SENTENCE_WORDS) / _IDEAL_SENTENCE_WORDS)


def _example_score(units: Sequence[StructuralUnit]) -> float:
    return 1.0 if any(u.kind is UnitKind.CODE_BLOCK for u in units) else 0.5


def score_performance(units: Sequence[StructuralUnit]) -> float:
    graph = section_tree(units)
    composite = (
        0.25 * _heading_score(units)
        + 0.20 * _balance_score(graph)
        + 0.25 * _paragraph_score(units)
        + 0.15 * _sentence_score(units)
        + 0.15 * _example_score(units)
    )
    return round(100.0 * composite, 2)


# ── Security / completeness ─────────────────────────────────────────────────


def score_security(findings: Sequence[SecurityFinding]) -> float:
    penalty = sum(_SECURITY_PENALTY.get(f.category, 0.0) for f in findings)
    return round(max(0.0, 100.0 - penalty), 2)


def missing_sections(
    units: Sequence[StructuralUnit], kind: DocumentKind
) -> list[ExpectedSection]:
    """Expected sections for *kind* with no matching heading, in checklist order."""
    headings = [u.content for u in units if u.kind is UnitKind.HEADING]
    return [
        section
        for section in expected_sections(kind)
        if not any(section.pattern.search(h) for h in headings)
    ]


def placeholder_count(units: Sequence[StructuralUnit]) -> int:
    return sum(
        len(_PLACEHOLDER_RE.findall(u.content)) for u in units if u.kind is not UnitKind.CODE_BLOCK
    )


def score_completeness(units: Sequence[StructuralUnit], kind: DocumentKind) -> float:
    expected = expected_sections(kind)
    coverage = 1.0
    if expected:
        coverage = 1.0 - len(missing_sections(units, kind)) / len(expected)
    penalty = _PLACEHOLDER_PENALTY * placeholder_count(units)
    penalty += _EMPTY_SECTION_PENALTY * len(empty_sections(section_tree(units)))
    return round(max(0.0, 100.0 * coverage - penalty), 2)


# ── Public API ──────────────────────────────────────────────────────────────


def score_document(
    units: Sequence[StructuralUnit],
    kind: DocumentKind,
    findings: Sequence[SecurityFinding],
    entropy: EntropyMeasurement,
) -> ScoreVector:
    """Return the four-dimensional score of an analysed document.

    Parameters
    ----------
    units:
        Parsed structural units, in document order.
    kind:
        Declared document kind (drives the expected-section checklist).
    findings:
        Security findings for *units*.
    entropy:
        Entropy measurement of *units*; ``miair`` is derived from it alone.
    """
    return ScoreVector(
        performance=score_performance(units),
        security=score_security(findings),
        completeness=score_completeness(units, kind),
        miair=miair_score(entropy),
    )
