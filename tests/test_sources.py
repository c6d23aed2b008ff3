"""
Tests for the message source adapter and the polling feed.

Tests cover:
- Canonical normalization and defaults
- Deterministic externalId synthesis
- Validation failures (InvalidMessage)
- Webhook event and scraped item mapping
- MessageFeed polling, acknowledgement and restart
"""

from datetime import datetime, timezone

import pytest

from chatlens.errors import InvalidMessage
from chatlens.sources import (
    GENERATED_ID_PREFIX,
    MessageFeed,
    from_scraped,
    from_webhook_event,
    normalize,
    parse_relative_ts,
    webhook_messages,
)


NOW = datetime(2025, 1, 15, 18, 30, tzinfo=timezone.utc)


class TestNormalize:
    """Test normalization of the canonical inbound shape."""

    def test_source_id_used_verbatim(self):
        draft = normalize(
            {"id": "m1", "groupId": "g1", "sender": "張三", "text": "hi", "timestamp": "2025-01-15T10:00:00Z"},
            default_group_id="default",
        )
        assert draft.external_id == "m1"
        assert draft.group_id == "g1"
        assert draft.sender == "張三"
        assert draft.text == "hi"
        assert draft.received_at == "2025-01-15T10:00:00Z"

    def test_defaults_for_missing_group_and_sender(self):
        draft = normalize({"text": "推薦一家好吃的餐廳"}, default_group_id="default", now=NOW)
        assert draft.group_id == "default"
        assert draft.sender == "Unknown"
        assert draft.received_at == "2025-01-15T18:30:00Z"

    def test_text_is_trimmed(self):
        draft = normalize({"text": "  hello  "}, default_group_id="default")
        assert draft.text == "hello"

    def test_timestamp_with_offset_normalized_to_utc(self):
        draft = normalize({"text": "hi", "timestamp": "2025-01-15T18:00:00+08:00"}, default_group_id="d")
        assert draft.received_at == "2025-01-15T10:00:00Z"

    def test_numeric_id_coerced_to_string(self):
        draft = normalize({"id": 42, "text": "hi"}, default_group_id="d")
        assert draft.external_id == "42"

    def test_group_id_snake_case_accepted(self):
        draft = normalize({"group_id": "g2", "text": "hi"}, default_group_id="d")
        assert draft.group_id == "g2"


class TestExternalIdSynthesis:
    """Test deterministic externalId generation."""

    def test_generated_id_is_deterministic(self):
        raw = {"sender": "張三", "text": "有人知道怎麼解決這個 bug 嗎？", "groupId": "g1", "timestamp": "2025-01-15T10:00:00Z"}
        first = normalize(raw, default_group_id="default")
        second = normalize(dict(raw), default_group_id="default")
        assert first.external_id == second.external_id
        assert first.external_id.startswith(GENERATED_ID_PREFIX)

    def test_generated_id_ignores_wall_clock(self):
        raw = {"sender": "張三", "text": "same text", "groupId": "g1"}
        early = normalize(raw, default_group_id="d", now=datetime(2025, 1, 1, tzinfo=timezone.utc))
        late = normalize(raw, default_group_id="d", now=datetime(2025, 6, 1, tzinfo=timezone.utc))
        assert early.external_id == late.external_id
        assert early.received_at != late.received_at

    @pytest.mark.parametrize("change", [
        {"groupId": "g2"},
        {"sender": "李四"},
        {"text": "other text"},
        {"timestamp": "2025-01-15T10:00:01Z"},
    ])
    def test_generated_id_depends_on_each_component(self, change):
        base = {"sender": "張三", "text": "hello", "groupId": "g1", "timestamp": "2025-01-15T10:00:00Z"}
        assert (
            normalize(base, default_group_id="d").external_id
            != normalize({**base, **change}, default_group_id="d").external_id
        )

    def test_blank_id_is_synthesized(self):
        draft = normalize({"id": "   ", "text": "hello"}, default_group_id="d")
        assert draft.external_id.startswith(GENERATED_ID_PREFIX)


class TestInvalidMessages:
    """Test validation failures at the adapter boundary."""

    @pytest.mark.parametrize("raw", [
        {"text": ""},
        {"text": "   \n\t"},
        {"sender": "張三"},
        {"text": None},
        {"text": "hi", "timestamp": "yesterday"},
        {"text": "x" * 5000},
        {"text": "hi", "timestamp": "0001-01-01T00:00:00+01:00"},
        {"text": "hi", "timestamp": "9999-12-31T23:30:00-01:00"},
        {"text": "hi", "timestamp": "0999-01-01T00:00:00Z"},
    ])
    def test_rejected(self, raw):
        with pytest.raises(InvalidMessage):
            normalize(raw, default_group_id="d")

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidMessage):
            normalize(["text", "hi"], default_group_id="d")

    def test_error_names_the_field(self):
        with pytest.raises(InvalidMessage, match="text"):
            normalize({"text": ""}, default_group_id="d")


class TestWebhookEvents:
    """Test Messenger page event mapping."""

    def test_text_message_mapped(self):
        event = {
            "sender": {"id": "PSID_1"},
            "recipient": {"id": "PAGE_1"},
            "timestamp": 1736935200000,
            "message": {"mid": "m_abc", "text": "有個 bug"},
        }
        raw = from_webhook_event(event, default_group_id="default")
        assert raw == {
            "id": "m_abc",
            "groupId": "default",
            "sender": "PSID_1",
            "text": "有個 bug",
            "timestamp": "2025-01-15T10:00:00Z",
        }

    @pytest.mark.parametrize("event", [
        {"sender": {"id": "1"}, "postback": {"payload": "GET_STARTED"}},
        {"sender": {"id": "1"}, "message": {"mid": "m", "attachments": [{"type": "image"}]}},
        {"sender": {"id": "1"}, "message": {"mid": "m", "text": "echo", "is_echo": True}},
        {"sender": {"id": "1"}, "delivery": {"mids": ["m"]}},
    ])
    def test_non_text_events_ignored(self, event):
        assert from_webhook_event(event, default_group_id="default") is None

    @pytest.mark.parametrize("event", ["x", None, ["message"], {"message": "hi"}, {"message": ["hi"]}])
    def test_malformed_events_ignored(self, event):
        assert from_webhook_event(event, default_group_id="default") is None

    def test_non_object_sender_and_huge_timestamp_tolerated(self):
        event = {"sender": "PSID_1", "timestamp": 10**20, "message": {"mid": "m", "text": "hi"}}
        raw = from_webhook_event(event, default_group_id="default")
        assert raw["sender"] is None
        assert raw["timestamp"] is None

    def test_webhook_messages_skips_malformed_entries(self):
        body = {
            "object": "page",
            "entry": [
                "x",
                {"messaging": "not a list"},
                {"messaging": [7, {"message": {"mid": "m1", "text": "hello"}}]},
            ],
        }
        raws = webhook_messages(body, default_group_id="default")
        assert [raw["id"] for raw in raws] == ["m1"]

    @pytest.mark.parametrize("body", [{}, {"entry": "x"}, {"entry": {"messaging": []}}])
    def test_webhook_messages_without_entry_list(self, body):
        assert webhook_messages(body, default_group_id="default") == []


class TestScrapedItems:
    """Test scraped DOM item mapping and relative timestamps."""

    @pytest.mark.parametrize("value, expected", [
        ("3:01 PM", "2025-01-15T15:01:00Z"),
        ("12:05 AM", "2025-01-15T00:05:00Z"),
        ("09:15", "2025-01-15T09:15:00Z"),
        ("11:59 PM", "2025-01-14T23:59:00Z"),  # later than reference: previous day
        ("Just now", "2025-01-15T18:30:00Z"),
        ("剛剛", "2025-01-15T18:30:00Z"),
        ("2025-01-10T08:00:00Z", "2025-01-10T08:00:00Z"),
        ("Yesterday", None),
        ("13:00 PM", None),
        ("", None),
        (None, None),
    ])
    def test_parse_relative_ts(self, value, expected):
        assert parse_relative_ts(value, NOW) == expected

    def test_scraped_item_mapped(self):
        item = {"id": "real_msg_2", "sender": "You", "content": "比較知道就是穴位電阻抗測量之類的", "timestamp": "3:01 PM"}
        raw = from_scraped(item, group_id="study-group", reference=NOW)
        assert raw == {
            "id": "real_msg_2",
            "groupId": "study-group",
            "sender": "You",
            "text": "比較知道就是穴位電阻抗測量之類的",
            "timestamp": "2025-01-15T15:01:00Z",
        }


class TestMessageFeed:
    """Test the polling producer."""

    def _fetcher(self, batches):
        batches = list(batches)

        def fetch():
            return batches.pop(0) if batches else []
        return fetch

    def test_yields_new_messages_across_polls(self):
        fetch = self._fetcher([
            [{"id": "a", "sender": "x", "content": "one"}],
            [{"id": "a", "sender": "x", "content": "one"}, {"id": "b", "sender": "y", "content": "two"}],
        ])
        feed = MessageFeed(fetch, group_id="g1", interval_seconds=0, max_polls=2)
        drafts = list(feed)
        # "a" was not acknowledged, so the second poll yields it again
        assert [d.external_id for d in drafts] == ["a", "a", "b"]

    def test_acknowledged_messages_are_not_yielded_again(self):
        fetch = self._fetcher([
            [{"id": "a", "sender": "x", "content": "one"}],
            [{"id": "a", "sender": "x", "content": "one"}, {"id": "b", "sender": "y", "content": "two"}],
        ])
        feed = MessageFeed(fetch, group_id="g1", interval_seconds=0, max_polls=2)
        seen = []
        for draft in feed:
            seen.append(draft.external_id)
            feed.acknowledge(draft.external_id)
        assert seen == ["a", "b"]
        assert feed.acknowledged == frozenset({"a", "b"})

    def test_invalid_items_are_skipped(self):
        fetch = self._fetcher([[{"id": "empty", "content": "   "}, {"id": "ok", "content": "hello"}]])
        feed = MessageFeed(fetch, group_id="g1", interval_seconds=0, max_polls=1)
        assert [d.external_id for d in feed] == ["ok"]

    def test_duplicates_within_one_poll_collapsed(self):
        fetch = self._fetcher([[{"id": "a", "content": "x"}, {"id": "a", "content": "x"}]])
        assert len(MessageFeed(fetch, group_id="g1", interval_seconds=0, max_polls=1).poll()) == 1

    def test_restart_resumes_from_acknowledged_state(self):
        items = [{"id": "a", "content": "one"}, {"id": "b", "content": "two"}]
        feed = MessageFeed(lambda: items, group_id="g1", interval_seconds=0, max_polls=1)

        iterator = iter(feed)
        first = next(iterator)
        feed.acknowledge(first.external_id)

        # A fresh iteration re-polls and only yields what is still pending
        assert [d.external_id for d in feed] == ["b"]

    def test_drafts_carry_the_feed_group(self):
        feed = MessageFeed(lambda: [{"id": "a", "content": "hi"}], group_id="g9", interval_seconds=0, max_polls=1)
        assert feed.poll()[0].group_id == "g9"

    def test_acknowledged_ids_are_bounded(self):
        feed = MessageFeed(lambda: [], group_id="g1", max_acknowledged=2)
        for external_id in ("a", "b", "c"):
            feed.acknowledge(external_id)
        assert feed.acknowledged == frozenset({"b", "c"})

    def test_reacknowledging_refreshes_an_id(self):
        feed = MessageFeed(lambda: [], group_id="g1", acknowledged=["a", "b"], max_acknowledged=2)
        feed.acknowledge("a")
        feed.acknowledge("c")
        assert feed.acknowledged == frozenset({"a", "c"})

    def test_evicted_id_is_yielded_again(self):
        items = [{"id": "a", "content": "one"}, {"id": "b", "content": "two"}]
        feed = MessageFeed(lambda: items, group_id="g1", interval_seconds=0, max_polls=1, max_acknowledged=1)
        feed.acknowledge("a")
        feed.acknowledge("b")
        assert [d.external_id for d in feed.poll()] == ["a"]
