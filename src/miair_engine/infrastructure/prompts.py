"""Rewrite prompts shared by the model-backed adapters."""

from __future__ import annotations

import json
from typing import Any

from miair_engine.domain.entities import Recommendation, RecommendationAction
from miair_engine.domain.exceptions import BackendUnavailableError

# ── Prompt templates ────────────────────────────────────────────────────────

SYSTEM_PROMPT = """\
You are a technical editor improving one block of a documentation file.  \
You receive the block verbatim plus one editing instruction.

Return **only** valid JSON with exactly this key:

{
  "rewritten": "<the complete replacement text for the block>"
}

Guidelines:
- Keep the block's markup (headings, fences, list markers, tags) intact.
- Change only what the instruction asks for; never invent facts.
- Never reintroduce text shown as [REDACTED].
- An empty string for "rewritten" removes the block.
"""

_ACTION_INSTRUCTIONS: dict[RecommendationAction, str] = {
    RecommendationAction.REMOVE_DUPLICATE: (
        "This block repeats content found earlier in the document.  Remove it by "
        "returning an empty string."
    ),
    RecommendationAction.REDACT_SECRET: (
        "Replace every credential, token or password in the block with [REDACTED]."
    ),
    RecommendationAction.FLAG_UNSAFE_COMMAND: (
        "Keep the hazardous command but append the text "
        "'WARNING: review this command before running it.' to the line that contains it."
    ),
    RecommendationAction.SPLIT_PARAGRAPH: (
        "Split the paragraph at sentence boundaries into paragraphs of at most 150 "
        "words, separated by a blank line."
    ),
    RecommendationAction.CLARIFY_WORDING: (
        "Remove filler words and replace vague terms with precise wording."
    ),
    RecommendationAction.ADD_SECTION: (
        "Return the block unchanged, followed by a blank line and the new section "
        "given below, adapted to the document's tone."
    ),
}


def build_user_prompt(unit_text: str, recommendation: Recommendation) -> str:
    """Render the instruction + block for one recommendation."""
    parts = [
        f"Instruction: {_ACTION_INSTRUCTIONS[recommendation.action]}",
        f"Reason: {recommendation.message}",
    ]
    if recommendation.suggestion:
        parts.append(f"New section:\n{recommendation.suggestion}")
    parts.append(f"Block:\n{unit_text}")
    return "\n\n".join(parts)


def parse_rewrite(raw: str) -> str:
    """Extract the rewritten block from a model response.

    Handles common failure modes: markdown fences around the JSON, a
    missing key, non-string values.
    """
    text = raw.strip()

    # Strip markdown code fences if present
    if text.startswith("```"):
        first_nl = text.index("\n") if "\n" in text else 3
        text = text[first_nl + 1 :]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

    try:
        data: dict[str, Any] = json.loads(text)
    except json.JSONDecodeError as exc:
        raise BackendUnavailableError(f"Model returned invalid JSON: {exc}") from exc

    rewritten = data.get("rewritten") if isinstance(data, dict) else None
    if not isinstance(rewritten, str):
        raise BackendUnavailableError("Model response missing 'rewritten' field.")
    return rewritten
