"""Tests for the OpenAI backend with a stubbed client."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from miair_engine.domain.entities import BackendKind, Recommendation, RecommendationAction, UnitKind
from miair_engine.domain.exceptions import BackendUnavailableError
from miair_engine.domain.value_objects import Span
from miair_engine.infrastructure.openai_adapter import OpenAIBackend
from miair_engine.services import token_budget

REC = Recommendation(
    rank=1,
    action=RecommendationAction.CLARIFY_WORDING,
    unit_indices=(0,),
    span=Span(0, 14),
    target_kind=UnitKind.PARAGRAPH,
    priority=4.0,
    message="Replace vague wording: simply.",
)


class _FakeCompletions:
    def __init__(self, content: str | None = None, error: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self._content = content
        self._error = error

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class _FakeClient:
    def __init__(self, completions: _FakeCompletions) -> None:
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def word_token_counter(monkeypatch):
    """Count whitespace-separated words instead of loading a tiktoken encoding."""
    monkeypatch.setattr(token_budget, "count_tokens", lambda text: len(text.split()))


def _backend(completions: _FakeCompletions, **kwargs) -> OpenAIBackend:
    return OpenAIBackend(client=_FakeClient(completions), model="gpt-test", **kwargs)


class TestOpenAIBackend:
    @pytest.mark.asyncio
    async def test_rewrite(self):
        completions = _FakeCompletions(json.dumps({"rewritten": "Run it."}))
        backend = _backend(completions)
        assert backend.kind is BackendKind.EXTERNAL
        assert await backend.rewrite("Simply run it.", REC) == "Run it."
        call = completions.calls[0]
        assert call["model"] == "gpt-test"
        assert call["response_format"] == {"type": "json_object"}
        assert call["messages"][0]["role"] == "system"
        assert "Simply run it." in call["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_fenced_json(self):
        completions = _FakeCompletions('```json\n{"rewritten": "Run it."}\n```')
        assert await _backend(completions).rewrite("Simply run it.", REC) == "Run it."

    @pytest.mark.asyncio
    async def test_over_budget_units_never_leave(self):
        completions = _FakeCompletions(json.dumps({"rewritten": "x"}))
        backend = _backend(completions, max_unit_tokens=10)
        with pytest.raises(BackendUnavailableError, match="token budget") as info:
            await backend.rewrite("Simply run it.", REC)
        assert completions.calls == []
        assert info.value.unit_index == 0

    @pytest.mark.asyncio
    async def test_empty_content(self):
        with pytest.raises(BackendUnavailableError, match="empty"):
            await _backend(_FakeCompletions("")).rewrite("Simply run it.", REC)

    @pytest.mark.asyncio
    async def test_client_errors_are_translated(self):
        completions = _FakeCompletions(error=RuntimeError("socket closed"))
        with pytest.raises(BackendUnavailableError, match="socket closed"):
            await _backend(completions).rewrite("Simply run it.", REC)

    @pytest.mark.asyncio
    async def test_missing_field(self):
        completions = _FakeCompletions(json.dumps({"text": "Run it."}))
        with pytest.raises(BackendUnavailableError, match="rewritten"):
            await _backend(completions).rewrite("Simply run it.", REC)

    @pytest.mark.asyncio
    async def test_close(self):
        client = _FakeClient(_FakeCompletions())
        await OpenAIBackend(client=client).close()
        assert client.closed
