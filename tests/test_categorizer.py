"""
Tests for the categorizer.

Tests cover:
- Keyword rule matching and priority order
- Fallback to Other
- Rule tables built from config
- Remote classification, label validation and local fallback
"""

import json

import pytest
import requests

from chatlens.categorizer import (
    DEFAULT_RULES,
    Categorizer,
    build_rules,
    load_rules,
    match_category,
)
from chatlens.domain import Category


class TestLocalRules:
    """Test the ordered keyword rule table."""

    @pytest.mark.parametrize("text, expected", [
        ("有人知道怎麼解決這個 bug 嗎？", Category.TECHNICAL),
        ("推薦一家好吃的餐廳", Category.LIFE),
        ("明天下午的會議改到三點", Category.WORK),
        ("可以幫忙看一下嗎", Category.HELP),
        ("週末聚會記得帶飲料", Category.EVENT),
        ("早安", Category.OTHER),
    ])
    def test_known_texts(self, text, expected):
        assert Categorizer().classify(text) is expected

    def test_matching_is_case_insensitive(self):
        assert Categorizer().classify("Found a BUG in the parser") is Category.TECHNICAL
        assert Categorizer().classify("Great MOVIE last night") is Category.LIFE

    def test_earliest_declared_category_wins(self):
        # "bug" (technical) and "怎麼" (help) both match
        assert match_category("怎麼修這個 bug", DEFAULT_RULES) is Category.TECHNICAL

    def test_no_match_falls_back_to_other(self):
        assert match_category("zzz", DEFAULT_RULES) is Category.OTHER

    def test_empty_rule_table_always_other(self):
        assert Categorizer(rules=[]).classify("bug report") is Category.OTHER

    def test_classification_is_deterministic(self):
        categorizer = Categorizer()
        text = "今天開會討論了新的專案需求，需要在下週完成"
        assert categorizer.classify(text) is categorizer.classify(text)

    def test_result_always_in_closed_set(self):
        categorizer = Categorizer()
        for text in ("a", "🙂", "12345", "今天天氣不錯", "API down again"):
            assert categorizer.classify(text) in set(Category)


class TestBuildRules:
    """Test rule tables built from config dicts."""

    def test_order_is_preserved(self):
        rules = build_rules([
            {"category": "Help-Request", "keywords": ["bug"]},
            {"category": "技術討論", "keywords": ["bug"]},
        ])
        assert match_category("a bug", rules) is Category.HELP

    def test_disabled_rules_are_skipped(self):
        rules = build_rules([
            {"category": "TECHNICAL", "keywords": ["bug"], "enabled": False},
            {"category": "工作相關", "keywords": ["bug"]},
        ])
        assert [r.category for r in rules] == [Category.WORK]

    def test_keywords_are_lowercased(self):
        rules = build_rules([{"category": "Event-Notice", "keywords": ["PARTY"]}])
        assert rules[0].keywords == ("party",)
        assert match_category("Party tonight", rules) is Category.EVENT

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            build_rules([{"category": "Gossip", "keywords": ["x"]}])

    def test_rules_for_other_rejected(self):
        with pytest.raises(ValueError):
            build_rules([{"category": "Other", "keywords": ["x"]}])

    def test_load_rules_from_json_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps([{"category": "生活分享", "keywords": ["咖啡"]}], ensure_ascii=False),
            encoding="utf-8",
        )
        rules = load_rules(str(path))
        assert Categorizer(rules=rules).classify("一起去喝咖啡") is Category.LIFE
        assert Categorizer(rules=rules).classify("bug") is Category.OTHER


class TestRemoteClassification:
    """Test remote delegation and its fallback contract."""

    def test_valid_remote_label_is_used(self, fake_llm, llm_client):
        fake_llm.answer("活動通知")
        # Local rules would say technical
        assert Categorizer(remote=llm_client).classify("bug") is Category.EVENT
        assert len(fake_llm.calls) == 1

    def test_english_remote_label_is_accepted(self, fake_llm, llm_client):
        fake_llm.answer("Work-Related")
        assert Categorizer(remote=llm_client).classify("hello") is Category.WORK

    def test_out_of_vocabulary_label_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.answer("學術討論")
        assert Categorizer(remote=llm_client).classify("有個 bug") is Category.TECHNICAL

    def test_timeout_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.fail(requests.Timeout("read timed out"))
        assert Categorizer(remote=llm_client).classify("推薦一家好吃的餐廳") is Category.LIFE

    def test_connection_error_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.fail(requests.ConnectionError("refused"))
        assert Categorizer(remote=llm_client).classify("hello") is Category.OTHER

    def test_http_error_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.answer("技術討論", status_code=500)
        assert Categorizer(remote=llm_client).classify("週末聚會") is Category.EVENT

    def test_malformed_body_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.respond({"unexpected": True})
        assert Categorizer(remote=llm_client).classify("bug") is Category.TECHNICAL

    def test_invalid_json_falls_back_to_rules(self, fake_llm, llm_client):
        fake_llm.respond(ValueError("not json"))
        assert Categorizer(remote=llm_client).classify("bug") is Category.TECHNICAL

    def test_timeout_budget_is_bounded_by_client_timeout(self, fake_llm, llm_client):
        fake_llm.answer("其他")
        Categorizer(remote=llm_client).classify("hello", timeout=30.0)
        assert fake_llm.calls[0]["timeout"] == 5.0

    def test_smaller_caller_budget_is_passed_through(self, fake_llm, llm_client):
        fake_llm.answer("其他")
        Categorizer(remote=llm_client).classify("hello", timeout=1.5)
        assert fake_llm.calls[0]["timeout"] == 1.5

    def test_exhausted_budget_skips_remote(self, fake_llm, llm_client):
        fake_llm.answer("其他")
        assert Categorizer(remote=llm_client).classify("bug", timeout=0) is Category.TECHNICAL
        assert fake_llm.calls == []

    def test_request_carries_text_and_sender(self, fake_llm, llm_client):
        fake_llm.answer("其他")
        Categorizer(remote=llm_client).classify("hello there", sender="張三")
        call = fake_llm.calls[0]
        prompt = call["json"]["messages"][0]["content"]
        assert "hello there" in prompt
        assert "張三" in prompt
        assert call["headers"]["x-api-key"] == "test-key"
