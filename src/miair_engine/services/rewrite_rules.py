"""Deterministic rewrite rules — one per recommendation action.

The optimizer simulates its recommendations with these rules, and the local
rules backend applies them verbatim, so predicted and achieved entropy agree.
"""

from __future__ import annotations

import re
from typing import Callable

from miair_engine.domain.entities import Recommendation, RecommendationAction
from miair_engine.services.document_parser import WORD_RE
from miair_engine.services.entropy import LONG_PARAGRAPH_WORDS
from miair_engine.services.security_sentinel import acknowledge, comment_leader, sanitize

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(\[])")
_HTML_PARAGRAPH_RE = re.compile(r"^(\s*<p\b[^>]*>)(.*?)(</p>\s*)$", re.DOTALL | re.IGNORECASE)

_FILLERS = r"simply|just|basically|obviously|clearly|really|very|somehow"
_FILLER_BEFORE_WORD_RE = re.compile(rf"\b(?:{_FILLERS})\b,?\s+(\w)", re.IGNORECASE)
_FILLER_RE = re.compile(rf"[ \t]*\b(?:{_FILLERS})\b,?", re.IGNORECASE)
_TRAILING_VAGUE_RE = re.compile(r",?\s*\b(?:etc|and so on)\b(\.?)", re.IGNORECASE)
_REPLACEMENTS = {"stuff": "details", "various": "several"}
_REPLACEMENT_RE = re.compile(r"\b(stuff|various)\b", re.IGNORECASE)


# ── Individual rules ────────────────────────────────────────────────────────


def _remove(text: str, rec: Recommendation) -> str:
    return ""


def _redact(text: str, rec: Recommendation) -> str:
    return sanitize(text).clean_text


def _flag(text: str, rec: Recommendation) -> str:
    return acknowledge(text, comment=comment_leader(rec.target_kind))


def _chunk_sentences(text: str) -> list[str]:
    """Group sentences into chunks of at most the readable paragraph length."""
    chunks: list[str] = []
    current: list[str] = []
    words = 0
    for sentence in _SENTENCE_SPLIT_RE.split(text.strip()):
        n = len(WORD_RE.findall(sentence))
        if current and words + n > LONG_PARAGRAPH_WORDS:
            chunks.append(" ".join(current))
            current, words = [], 0
        current.append(sentence)
        words += n
    if current:
        chunks.append(" ".join(current))
    return chunks


def _split(text: str, rec: Recommendation) -> str:
    match = _HTML_PARAGRAPH_RE.match(text)
    if match:
        opening, inner, closing = match.groups()
        return "\n\n".join(f"{opening}{c}{closing.strip()}" for c in _chunk_sentences(inner))
    return "\n\n".join(_chunk_sentences(text))


def _match_case(word: str, template: str) -> str:
    return word.capitalize() if template[:1].isupper() else word


def _clarify(text: str, rec: Recommendation) -> str:
    text = _TRAILING_VAGUE_RE.sub(lambda m: m.group(1), text)
    text = _REPLACEMENT_RE.sub(
        lambda m: _match_case(_REPLACEMENTS[m.group(1).lower()], m.group(1)), text
    )
    text = _FILLER_BEFORE_WORD_RE.sub(
        lambda m: m.group(1).upper() if m.group(0)[:1].isupper() else m.group(1), text
    )
    return _FILLER_RE.sub("", text)


def _add_section(text: str, rec: Recommendation) -> str:
    if not rec.suggestion:
        return text
    return text.rstrip("\n") + "\n\n" + rec.suggestion


_RULES: dict[RecommendationAction, Callable[[str, Recommendation], str]] = {
    RecommendationAction.REMOVE_DUPLICATE: _remove,
    RecommendationAction.REDACT_SECRET: _redact,
    RecommendationAction.FLAG_UNSAFE_COMMAND: _flag,
    RecommendationAction.SPLIT_PARAGRAPH: _split,
    RecommendationAction.CLARIFY_WORDING: _clarify,
    RecommendationAction.ADD_SECTION: _add_section,
}


# ── Public API ──────────────────────────────────────────────────────────────


def apply_rule(unit_text: str, recommendation: Recommendation) -> str:
    """Rewrite *unit_text* as *recommendation* asks (``""`` removes the unit)."""
    return _RULES[recommendation.action](unit_text, recommendation)
