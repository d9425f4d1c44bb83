from __future__ import annotations

import logging
import os
import re
import textwrap
from typing import Protocol

from .config import MemoriaConfig, load_config
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
SUMMARY_MAX_TOKENS = 200

SUMMARY_SYSTEM_PROMPT = (
    "You condense chat replies into short memory notes. "
    "Write one or two plain sentences that keep names, facts, decisions and numbers. "
    "Do not add commentary."
)


class SummarizerClient(Protocol):
    def summarize(self, text: str) -> str: ...


class _OpenAIClient:
    def __init__(self, model: str, api_key: str, base_url: str | None) -> None:
        from openai import OpenAI

        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=base_url)

    def summarize(self, text: str, max_chars: int) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": text[:max_chars]},
            ],
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=0,
        )
        return (resp.choices[0].message.content or "").strip()


class _AnthropicClient:
    def __init__(self, model: str, api_key: str) -> None:
        import anthropic

        self.model = model
        self.client = anthropic.Anthropic(api_key=api_key)

    def summarize(self, text: str, max_chars: int) -> str:
        resp = self.client.messages.create(
            model=self.model,
            system=SUMMARY_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": text[:max_chars]}],
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=0,
        )
        parts = [block.text for block in resp.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()


def _heuristic_summary(text: str, max_sentences: int = 2, width: int = 400) -> str:
    cleaned = re.sub(r"\s+", " ", text).strip()
    if not cleaned:
        return ""
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", cleaned) if s.strip()]
    summary = " ".join(sentences[:max_sentences])
    return textwrap.shorten(summary, width=width, placeholder="...")


class Summarizer:
    """Turns a model reply into a short memory note.

    ``summarizer_provider`` selects an OpenAI-compatible endpoint (``openai`` or
    ``custom`` with a base url) or ``anthropic``. Without a provider, or without a
    key for it, the leading sentences of the reply are kept instead.
    """

    def __init__(
        self,
        config: MemoriaConfig | None = None,
        *,
        force_heuristic: bool = False,
    ) -> None:
        self.config = config or load_config()
        self.force_heuristic = force_heuristic
        self.provider = (self.config.summarizer_provider or "").strip().lower()
        self.client: _OpenAIClient | _AnthropicClient | None = None
        if force_heuristic or not self.provider:
            return
        try:
            self.client = self._build_client()
        except Exception as exc:  # pragma: no cover
            logger.exception(
                "summarizer client init failed",
                extra={"provider": self.provider},
                exc_info=exc,
            )
            self.client = None

    def _build_client(self) -> _OpenAIClient | _AnthropicClient | None:
        cfg = self.config
        if self.provider == "anthropic":
            api_key = cfg.summarizer_api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                logger.warning("summarizer: missing anthropic api key")
                return None
            return _AnthropicClient(
                model=cfg.summarizer_model or DEFAULT_ANTHROPIC_MODEL, api_key=api_key
            )
        if self.provider not in {"openai", "custom"}:
            logger.warning("summarizer: unknown provider %s", self.provider)
            return None
        if self.provider == "custom" and not cfg.summarizer_base_url:
            logger.warning("summarizer: custom provider requires summarizer_base_url")
            return None
        api_key = cfg.summarizer_api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("summarizer: missing %s api key", self.provider)
            return None
        return _OpenAIClient(
            model=cfg.summarizer_model or DEFAULT_OPENAI_MODEL,
            api_key=api_key,
            base_url=cfg.summarizer_base_url,
        )

    def summarize(self, text: str) -> str:
        if not text.strip():
            raise ExternalServiceError("nothing to summarize")
        if self.client is None:
            return _heuristic_summary(text)
        try:
            summary = self.client.summarize(text, self.config.summary_max_chars)
        except Exception as exc:
            raise ExternalServiceError(f"summarizer call failed: {exc}") from exc
        if not summary:
            raise ExternalServiceError("summarizer returned an empty summary")
        return summary
