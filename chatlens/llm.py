"""
Remote LLM client shared by the categorizer and the summarizer.

Talks to an Anthropic-compatible messages endpoint. Every failure mode
(timeout, HTTP error, malformed body, empty answer) is raised as a
RemoteServiceUnavailable subclass so callers can fall back locally.
"""

import json
import logging
import time
from typing import Optional, Type

import requests

from chatlens.config import Settings
from chatlens.errors import RemoteServiceUnavailable
from chatlens.metrics import record_llm_latency

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CHUNK_SIZE = 8192


def _read_body(response: requests.Response, deadline: float) -> Optional[bytes]:
    """Read the whole body, or return None once the monotonic deadline has passed."""
    chunks = []
    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
        if time.monotonic() > deadline:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


class LLMClient:
    """
    Thin wrapper over the remote text-generation API.

    USAGE:
        client = LLMClient(api_key="...")
        text = client.complete("Summarize: ...", max_tokens=100, timeout=5.0)
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        model: str = "claude-3-haiku-20240307",
        timeout_seconds: float = 5.0,
    ):
        self._api_key = api_key
        self._api_url = api_url
        self._model = model
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["LLMClient"]:
        """Build a client, or return None when no API key is configured."""
        if not settings.LLM_API_KEY:
            logger.info("No LLM_API_KEY set, using local rules only")
            return None
        return cls(
            api_key=settings.LLM_API_KEY,
            api_url=settings.LLM_API_URL,
            model=settings.LLM_MODEL,
            timeout_seconds=settings.REMOTE_TIMEOUT_SECONDS,
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 100,
        temperature: float = 0.0,
        timeout: Optional[float] = None,
        error_cls: Type[RemoteServiceUnavailable] = RemoteServiceUnavailable,
    ) -> str:
        """
        Send a single-turn prompt and return the answer text.

        requests applies its timeout to each socket operation, so the body
        is streamed and the wall clock is checked after every chunk. The
        call therefore ends at most one read timeout past `timeout`.

        Args:
            prompt: User prompt
            max_tokens: Generation budget
            temperature: Sampling temperature
            timeout: Total seconds allowed; defaults to the configured timeout
            error_cls: Exception type raised on failure

        Raises:
            error_cls: on any failure, an exceeded deadline or an empty answer
        """
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }

        budget = timeout if timeout is not None else self._timeout
        started = time.monotonic()
        try:
            with requests.post(
                self._api_url,
                headers=headers,
                json=payload,
                timeout=budget,
                stream=True,
            ) as response:
                response.raise_for_status()
                body = _read_body(response, started + budget)
            if body is None:
                raise error_cls(f"LLM API exceeded the {budget:.2f}s deadline")
            data = json.loads(body)
        except requests.Timeout as e:
            raise error_cls("LLM API timeout") from e
        except requests.RequestException as e:
            raise error_cls(f"LLM API error: {e}") from e
        except ValueError as e:
            raise error_cls(f"LLM API returned invalid JSON: {e}") from e
        finally:
            record_llm_latency(time.monotonic() - started)

        content = self._extract_response_content(data)
        if not content:
            raise error_cls("LLM API returned an empty answer")
        return content

    def _extract_response_content(self, data) -> str:
        """Extract text content from a messages API response."""
        try:
            blocks = data.get("content", [])
            if blocks:
                return (blocks[0].get("text") or "").strip()
        except (AttributeError, IndexError, TypeError):
            pass
        return ""
