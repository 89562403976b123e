"""Entropy model — information disorder of a structural-unit sequence.

Each unit carries an information estimate ``n · H(tokens)`` (token count
times the Shannon entropy of its token distribution).  Document entropy is
the sum of per-unit *disorder* terms, all measured in bits:

* **redundancy** — a near-duplicate of an earlier canonical unit repeats
  information; the repeated share ``bits · similarity`` is disorder, only
  the novel remainder counts as content.  Repetition therefore adds almost
  nothing to what a reader learns.
* **ambiguity** — vague wording, a fixed cost per occurrence.
* **noise** — high-entropy secret strings, ``len · H(chars)`` per match.
* **hazard** — unacknowledged unsafe commands or vulnerable advice.
* **sprawl** — words beyond the readable paragraph length.

Every term is local to one unit except redundancy, which only looks back at
*canonical* units.  Removing a redundant unit never changes which units
are canonical, so fixes do not interfere with each other.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence

from miair_engine.domain.entities import EntropyMeasurement, StructuralUnit, UnitKind
from miair_engine.services.document_parser import WORD_RE
from miair_engine.services.security_sentinel import find_hazards, find_secrets

# ── Model constants ─────────────────────────────────────────────────────────

REDUNDANCY_THRESHOLD = 0.8
MIN_REDUNDANCY_TOKENS = 8
SHINGLE_SIZE = 3
AMBIGUITY_BITS = 4.0
HAZARD_BITS = 12.0
LONG_PARAGRAPH_WORDS = 150
SPRAWL_BITS_PER_WORD = 0.5
MIAIR_SCALE_BITS = 256.0

_REDUNDANCY_KINDS = frozenset(
    {UnitKind.PARAGRAPH, UnitKind.LIST, UnitKind.TABLE, UnitKind.CODE_BLOCK}
)

VAGUE_RE = re.compile(
    r"\b(simply|just|basically|obviously|clearly|really|very|somehow|stuff|various|etc|and so on)\b",
    re.IGNORECASE,
)


# ── Primitive measures ──────────────────────────────────────────────────────


def tokenize(text: str) -> list[str]:
    return WORD_RE.findall(text.lower())


def shannon(items: Iterable[object]) -> float:
    """Shannon entropy in bits per item of the empirical distribution."""
    counts = Counter(items)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    return -sum((c / total) * math.log2(c / total) for c in counts.values())


def information_bits(tokens: Sequence[str]) -> float:
    return len(tokens) * shannon(tokens)


def shingles(tokens: Sequence[str], size: int = SHINGLE_SIZE) -> frozenset[tuple[str, ...]]:
    if len(tokens) < size:
        return frozenset({tuple(tokens)}) if tokens else frozenset()
    return frozenset(tuple(tokens[i : i + size]) for i in range(len(tokens) - size + 1))


def jaccard(a: frozenset[tuple[str, ...]], b: frozenset[tuple[str, ...]]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def vague_terms(content: str) -> list[str]:
    return [m.group(1).lower() for m in VAGUE_RE.finditer(content)]


# ── Redundancy ──────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Redundancy:
    """A unit that repeats an earlier canonical unit."""

    canonical: int
    similarity: float


def redundancy_map(units: Sequence[StructuralUnit]) -> dict[int, Redundancy]:
    """Map each redundant unit index to the canonical unit it repeats.

    Units are visited in document order; a unit becomes canonical unless it
    is at least :data:`REDUNDANCY_THRESHOLD` similar to an existing canonical
    unit of the same kind.
    """
    canonicals: list[tuple[StructuralUnit, frozenset[tuple[str, ...]]]] = []
    redundant: dict[int, Redundancy] = {}
    for unit in units:
        if unit.kind not in _REDUNDANCY_KINDS:
            continue
        tokens = tokenize(unit.content)
        if len(tokens) < MIN_REDUNDANCY_TOKENS:
            continue
        grams = shingles(tokens)
        best: Redundancy | None = None
        for canonical, canonical_grams in canonicals:
            if canonical.kind is not unit.kind:
                continue
            smaller, larger = sorted((len(grams), len(canonical_grams)))
            if smaller < REDUNDANCY_THRESHOLD * larger:
                continue
            sim = jaccard(grams, canonical_grams)
            if sim >= REDUNDANCY_THRESHOLD and (best is None or sim > best.similarity):
                best = Redundancy(canonical.index, sim)
        if best is None:
            canonicals.append((unit, grams))
        else:
            redundant[unit.index] = best
    return redundant


# ── Per-unit disorder ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class UnitEntropy:
    redundancy: float = 0.0
    ambiguity: float = 0.0
    noise: float = 0.0
    hazard: float = 0.0
    sprawl: float = 0.0

    @property
    def total(self) -> float:
        return self.redundancy + self.ambiguity + self.noise + self.hazard + self.sprawl


def unit_entropy(unit: StructuralUnit, redundancy: Redundancy | None = None) -> UnitEntropy:
    tokens = tokenize(unit.content)
    redundant_bits = information_bits(tokens) * redundancy.similarity if redundancy else 0.0
    ambiguity = AMBIGUITY_BITS * len(vague_terms(unit.content)) if unit.is_prose else 0.0
    noise = sum(len(secret) * shannon(secret) for _label, secret in find_secrets(unit.text))
    hazard = HAZARD_BITS * len(find_hazards(unit.text))
    sprawl = 0.0
    if unit.kind is UnitKind.PARAGRAPH and len(tokens) > LONG_PARAGRAPH_WORDS:
        sprawl = SPRAWL_BITS_PER_WORD * (len(tokens) - LONG_PARAGRAPH_WORDS)
    return UnitEntropy(redundant_bits, ambiguity, noise, hazard, sprawl)


def unit_entropies(units: Sequence[StructuralUnit]) -> list[UnitEntropy]:
    redundant = redundancy_map(units)
    return [unit_entropy(u, redundant.get(u.index)) for u in units]


# ── Aggregate ───────────────────────────────────────────────────────────────


def measure(units: Sequence[StructuralUnit], prior: float | None = None) -> EntropyMeasurement:
    """Aggregate entropy of *units* (deterministic, non-negative)."""
    parts = unit_entropies(units)
    redundancy = sum(p.redundancy for p in parts)
    ambiguity = sum(p.ambiguity for p in parts)
    noise = sum(p.noise for p in parts)
    hazard = sum(p.hazard for p in parts)
    sprawl = sum(p.sprawl for p in parts)
    return EntropyMeasurement(
        value=round(redundancy + ambiguity + noise + hazard + sprawl, 6),
        redundancy=round(redundancy, 6),
        ambiguity=round(ambiguity, 6),
        noise=round(noise, 6),
        hazard=round(hazard, 6),
        sprawl=round(sprawl, 6),
        prior=prior,
    )


def miair_score(measurement: EntropyMeasurement) -> float:
    """Entropy-derived quality: 100 for a disorder-free document, decaying with bits."""
    return round(100.0 * math.exp(-measurement.value / MIAIR_SCALE_BITS), 2)
