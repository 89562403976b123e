"""Deterministic token budget for prompts sent to external models.

Uses ``tiktoken`` for exact token counting so a unit that would overflow
the model's context is refused before any bytes leave the machine.
"""

from __future__ import annotations

from dataclasses import dataclass

import tiktoken

# ── Constants ───────────────────────────────────────────────────────────────

_ENCODING_NAME = "cl100k_base"  # GPT-4o family


# ── Public helpers ──────────────────────────────────────────────────────────

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    global _encoder  # noqa: PLW0603
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_ENCODING_NAME)
    return _encoder


def count_tokens(text: str) -> int:
    """Return the exact token count for *text* under cl100k_base."""
    return len(_get_encoder().encode(text))


@dataclass(frozen=True, slots=True)
class PromptBudget:
    """Token accounting for one rewrite prompt."""

    prompt_tokens: int
    limit: int

    @property
    def fits(self) -> bool:
        return self.prompt_tokens <= self.limit

    @property
    def overflow(self) -> int:
        return max(0, self.prompt_tokens - self.limit)


def measure_prompt(system_prompt: str, user_prompt: str, limit: int) -> PromptBudget:
    """Count the tokens of a system + user prompt pair against *limit*."""
    return PromptBudget(count_tokens(system_prompt) + count_tokens(user_prompt), limit)
