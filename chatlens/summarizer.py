"""
Message summarizer.

The local summary is the text itself when it fits the character budget,
otherwise a truncation with a trailing ellipsis. A configured LLM client
is tried first with the same fallback contract as the categorizer.
"""

import logging
from typing import Optional

from chatlens.errors import SummaryUnavailable
from chatlens.llm import LLMClient
from chatlens.metrics import record_remote_fallback

logger = logging.getLogger(__name__)

ELLIPSIS = "…"

PROMPT_TEMPLATE = (
    "請為以下訊息生成簡潔的摘要（最多{max_chars}字）：\n\n"
    "用戶：{sender}\n"
    "訊息：{text}\n\n"
    "摘要："
)


def truncate(text: str, max_chars: int) -> str:
    """Return text unchanged if it fits, else cut to max_chars and mark the elision."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + ELLIPSIS


class Summarizer:
    """summarize(text) -> short derived text; never raises for remote failures."""

    def __init__(self, max_chars: int = 50, remote: Optional[LLMClient] = None):
        if max_chars < 1:
            raise ValueError("max_chars must be positive")
        self._max_chars = max_chars
        self._remote = remote

    @property
    def max_chars(self) -> int:
        return self._max_chars

    def summarize(self, text: str, sender: Optional[str] = None, timeout: Optional[float] = None) -> str:
        # Short messages are their own summary, no remote call needed
        if len(text.strip()) <= self._max_chars:
            return text.strip()

        if self._remote is not None and (timeout is None or timeout > 0):
            try:
                return self._summarize_remote(text, sender, timeout)
            except SummaryUnavailable as e:
                logger.warning(f"Remote summary unavailable, truncating locally: {e}")
                record_remote_fallback("summarize")

        return truncate(text, self._max_chars)

    def _summarize_remote(self, text: str, sender: Optional[str], timeout: Optional[float]) -> str:
        if timeout is not None:
            timeout = min(timeout, self._remote.timeout_seconds)
        answer = self._remote.complete(
            PROMPT_TEMPLATE.format(max_chars=self._max_chars, sender=sender or "未知", text=text),
            max_tokens=100,
            temperature=0.3,
            timeout=timeout,
            error_cls=SummaryUnavailable,
        )
        return truncate(answer, self._max_chars)
