"""OpenAI adapter — implements the RewriteBackend port with a remote model."""

from __future__ import annotations

import logging

from openai import AsyncOpenAI, AuthenticationError, RateLimitError

from miair_engine.domain.entities import BackendKind, Recommendation
from miair_engine.domain.exceptions import BackendUnavailableError
from miair_engine.infrastructure.prompts import SYSTEM_PROMPT, build_user_prompt, parse_rewrite
from miair_engine.services.token_budget import measure_prompt

logger = logging.getLogger(__name__)


class OpenAIBackend:
    """Concrete *external* ``RewriteBackend`` backed by the chat-completions API.

    Prompts over ``max_unit_tokens`` are refused before any request is made.
    """

    kind = BackendKind.EXTERNAL

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        *,
        max_unit_tokens: int = 4_000,
        client: AsyncOpenAI | None = None,
        name: str = "openai",
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=5)
        self._model = model
        self._max_unit_tokens = max_unit_tokens
        self.name = name

    async def rewrite(self, unit_text: str, recommendation: Recommendation) -> str:
        """Send one rewrite prompt and return the rewritten block."""
        user_prompt = build_user_prompt(unit_text, recommendation)
        budget = measure_prompt(SYSTEM_PROMPT, user_prompt, self._max_unit_tokens)
        if not budget.fits:
            raise BackendUnavailableError(
                f"Unit exceeds the external token budget by {budget.overflow} tokens",
                unit_index=recommendation.target_index,
            )

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )

            choice = response.choices[0]
            content = choice.message.content

            if not content:
                raise BackendUnavailableError("LLM returned an empty response.")

            return parse_rewrite(content)

        except AuthenticationError as exc:
            raise BackendUnavailableError(
                "Invalid OpenAI API key. "
                "Set a valid key in the MIAIR_OPENAI_API_KEY environment variable."
            ) from exc

        except RateLimitError as exc:
            detail = str(exc)
            logger.error("OpenAI RateLimitError: %s", detail)
            raise BackendUnavailableError(f"OpenAI rate limit / quota error: {detail}") from exc

        except BackendUnavailableError:
            raise

        except Exception as exc:
            raise BackendUnavailableError(f"LLM call failed: {exc}") from exc

    async def close(self) -> None:
        """Release underlying HTTP resources."""
        await self._client.close()
