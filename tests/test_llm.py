"""
Tests for the remote LLM client.

Tests cover:
- Streamed answers are decoded
- The total deadline bounds slow bodies, not only each socket read
- Failures are raised as the caller's error type
"""

import pytest
import requests
from prometheus_client import REGISTRY

from chatlens.errors import ClassificationUnavailable, RemoteServiceUnavailable, SummaryUnavailable


def llm_latency_count():
    return REGISTRY.get_sample_value("llm_request_latency_seconds_count") or 0.0


class TestComplete:

    def test_answer_text_returned(self, fake_llm, llm_client):
        fake_llm.answer("  技術討論 \n", chunk_size=4)
        assert llm_client.complete("classify", timeout=1.0) == "技術討論"
        assert fake_llm.calls[0]["stream"] is True
        assert fake_llm.calls[0]["timeout"] == 1.0

    def test_default_timeout_is_the_configured_one(self, fake_llm, llm_client):
        fake_llm.answer("ok")
        llm_client.complete("hi")
        assert fake_llm.calls[0]["timeout"] == 5.0

    def test_slow_body_exceeds_total_deadline(self, fake_llm, llm_client):
        # Each chunk arrives well within a per-read timeout, the whole body does not
        fake_llm.answer("工作相關", chunk_size=8, chunk_delay=0.05)
        with pytest.raises(SummaryUnavailable, match="deadline"):
            llm_client.complete("summarize", timeout=0.1, error_cls=SummaryUnavailable)

    def test_body_within_deadline_is_accepted(self, fake_llm, llm_client):
        fake_llm.answer("工作相關", chunk_size=8, chunk_delay=0.001)
        assert llm_client.complete("classify", timeout=5.0) == "工作相關"

    @pytest.mark.parametrize("configure", [
        lambda fake: fake.fail(requests.Timeout("slow")),
        lambda fake: fake.fail(requests.ConnectionError("refused")),
        lambda fake: fake.answer("x", status_code=503),
        lambda fake: fake.respond(ValueError("not json")),
        lambda fake: fake.respond({"content": []}),
    ])
    def test_failures_raise_caller_error(self, fake_llm, llm_client, configure):
        configure(fake_llm)
        with pytest.raises(ClassificationUnavailable):
            llm_client.complete("classify", error_cls=ClassificationUnavailable)

    def test_latency_recorded_for_failures(self, fake_llm, llm_client):
        fake_llm.fail(requests.Timeout("slow"))
        before = llm_latency_count()
        with pytest.raises(RemoteServiceUnavailable):
            llm_client.complete("hi")
        assert llm_latency_count() == before + 1
