from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from memoria.config import MemoriaConfig
from memoria.errors import ExternalServiceError
from memoria.summarizer import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_OPENAI_MODEL,
    SUMMARY_SYSTEM_PROMPT,
    Summarizer,
)


def test_heuristic_summary_keeps_leading_sentences() -> None:
    summarizer = Summarizer(MemoriaConfig(), force_heuristic=True)

    summary = summarizer.summarize(
        "Paris is the capital of France.   It hosts the Louvre!  The weather was mild."
    )

    assert summary == "Paris is the capital of France. It hosts the Louvre!"


def test_summarize_rejects_blank_text() -> None:
    summarizer = Summarizer(MemoriaConfig(), force_heuristic=True)

    with pytest.raises(ExternalServiceError):
        summarizer.summarize("  \n ")


def test_provider_without_key_falls_back_to_heuristic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    summarizer = Summarizer(MemoriaConfig(summarizer_provider="openai"))

    assert summarizer.client is None
    assert summarizer.summarize("One fact. Two facts. Three facts.") == "One fact. Two facts."


def test_custom_provider_requires_base_url() -> None:
    summarizer = Summarizer(MemoriaConfig(summarizer_provider="custom", summarizer_api_key="k"))

    assert summarizer.client is None


def test_openai_provider_uses_chat_completions() -> None:
    summarizer = Summarizer(MemoriaConfig(summarizer_provider="openai", summarizer_api_key="k"))
    assert summarizer.client is not None
    assert summarizer.client.model == DEFAULT_OPENAI_MODEL
    summarizer.client.client = MagicMock()
    summarizer.client.client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=" Paris is the capital. "))]
    )

    assert summarizer.summarize("Tell me about Paris.") == "Paris is the capital."
    kwargs = summarizer.client.client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"][0]["role"] == "system"
    assert kwargs["temperature"] == 0


def test_anthropic_provider_uses_messages_api() -> None:
    summarizer = Summarizer(
        MemoriaConfig(summarizer_provider="anthropic", summarizer_api_key="k")
    )
    assert summarizer.client is not None
    assert summarizer.client.model == DEFAULT_ANTHROPIC_MODEL
    summarizer.client.client = MagicMock()
    summarizer.client.client.messages.create.return_value = SimpleNamespace(
        content=[SimpleNamespace(type="text", text="User prefers tea.")]
    )

    assert summarizer.summarize("I like tea more than coffee.") == "User prefers tea."
    kwargs = summarizer.client.client.messages.create.call_args.kwargs
    assert kwargs["system"] == SUMMARY_SYSTEM_PROMPT


def test_model_client_result_and_failures() -> None:
    summarizer = Summarizer(MemoriaConfig(summary_max_chars=10), force_heuristic=True)
    summarizer.client = MagicMock()

    summarizer.client.summarize.return_value = "User likes tea."
    assert summarizer.summarize("I really like tea") == "User likes tea."
    summarizer.client.summarize.assert_called_with("I really like tea", 10)

    summarizer.client.summarize.return_value = ""
    with pytest.raises(ExternalServiceError, match="empty summary"):
        summarizer.summarize("I really like tea")

    summarizer.client.summarize.side_effect = RuntimeError("rate limited")
    with pytest.raises(ExternalServiceError, match="rate limited"):
        summarizer.summarize("I really like tea")
