"""Ollama adapter — implements the RewriteBackend port with a local model.

Talks to an Ollama server on the same machine (or trusted network) over its
REST API, so it is classified as a *local* backend.
"""

from __future__ import annotations

import logging

import httpx

from miair_engine.domain.entities import BackendKind, Recommendation
from miair_engine.domain.exceptions import BackendUnavailableError
from miair_engine.infrastructure.prompts import SYSTEM_PROMPT, build_user_prompt, parse_rewrite

logger = logging.getLogger(__name__)


class OllamaBackend:
    """Concrete ``RewriteBackend`` backed by ``POST /api/generate``."""

    kind = BackendKind.LOCAL

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1",
        name: str = "ollama",
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._model = model
        self.name = name

    async def rewrite(self, unit_text: str, recommendation: Recommendation) -> str:
        """Send one rewrite prompt and return the rewritten block."""
        url = f"{self._base_url}/api/generate"
        payload = {
            "model": self._model,
            "system": SYSTEM_PROMPT,
            "prompt": build_user_prompt(unit_text, recommendation),
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.2},
        }
        try:
            resp = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise BackendUnavailableError(
                f"Network error calling {url}: {exc}",
                unit_index=recommendation.target_index,
            ) from exc

        if resp.status_code != 200:
            logger.debug("Ollama returned HTTP %d: %s", resp.status_code, resp.text[:200])
            raise BackendUnavailableError(
                f"Ollama returned HTTP {resp.status_code} for model {self._model}",
                unit_index=recommendation.target_index,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise BackendUnavailableError(f"Ollama returned a non-JSON body: {exc}") from exc

        content = body.get("response") if isinstance(body, dict) else None
        if not content:
            raise BackendUnavailableError("Ollama returned an empty response.")
        return parse_rewrite(content)

    async def close(self) -> None:
        """Release underlying HTTP resources."""
        await self._client.aclose()
