"""
Message source adapter.

Normalizes messages arriving from any origin (scraped DOM items, Messenger
page-webhook events, manual API calls) into a canonical MessageDraft, and
exposes a polling producer (MessageFeed) over an external scraper.

The scraper itself is not part of this package: MessageFeed only needs a
callable returning a list of raw item dicts.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from pydantic import ValidationError

from chatlens.domain import MessageDraft
from chatlens.errors import InvalidMessage
from chatlens.schemas import InboundMessage
from chatlens.utils import format_ts, parse_iso_ts, utc_now

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "Unknown"
GENERATED_ID_PREFIX = "gen_"
DEFAULT_MAX_ACKNOWLEDGED = 10_000

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*([AaPp][Mm])?$")
_JUST_NOW = {"just now", "now", "剛剛", "刚刚"}


def synthesize_external_id(group_id: str, sender: str, text: str, timestamp: str) -> str:
    """
    Deterministic externalId for sources without a stable id.

    Built only from message content so that a retried delivery maps to the
    same row.
    """
    payload = "\x1f".join((group_id, sender, text, timestamp))
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{GENERATED_ID_PREFIX}{digest[:32]}"


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "message"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def normalize(
    raw: Mapping[str, Any],
    *,
    default_group_id: str,
    now: Optional[datetime] = None,
) -> MessageDraft:
    """
    Turn a raw inbound message into a canonical MessageDraft.

    Args:
        raw: {id?, groupId?, sender?, text, timestamp?}
        default_group_id: Sentinel used when the source has no group
        now: Fallback receivedAt when the source has no timestamp

    Raises:
        InvalidMessage: if the payload is malformed or the text is empty
    """
    if not isinstance(raw, Mapping):
        raise InvalidMessage("message must be a JSON object")

    try:
        inbound = InboundMessage.model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidMessage(_describe_validation_error(e)) from e

    group_id = inbound.group_id or default_group_id
    sender = inbound.sender or UNKNOWN_SENDER

    if inbound.timestamp:
        received_at = format_ts(parse_iso_ts(inbound.timestamp))
        time_key = received_at
    else:
        # No source time: the id must not depend on the wall clock
        received_at = format_ts(now or utc_now())
        time_key = ""

    external_id = inbound.id or synthesize_external_id(group_id, sender, inbound.text, time_key)

    return MessageDraft(
        external_id=external_id,
        group_id=group_id,
        sender=sender,
        text=inbound.text,
        received_at=received_at,
    )


def from_webhook_event(event: Any, *, default_group_id: str) -> Optional[dict]:
    """
    Map a Messenger page messaging event to the inbound shape.

    Returns None for events that carry no text (echoes, postbacks,
    attachment-only messages, delivery/read receipts) and for anything
    that is not shaped like an event object.
    """
    if not isinstance(event, Mapping):
        return None
    message = event.get("message")
    if not isinstance(message, Mapping) or message.get("is_echo") or not message.get("text"):
        return None

    timestamp = None
    ts_ms = event.get("timestamp")
    if isinstance(ts_ms, (int, float)) and not isinstance(ts_ms, bool):
        try:
            timestamp = format_ts(datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            logger.warning(f"Ignoring out-of-range webhook timestamp: {ts_ms!r}")

    sender = event.get("sender")
    return {
        "id": message.get("mid"),
        "groupId": event.get("thread_id") or default_group_id,
        "sender": sender.get("id") if isinstance(sender, Mapping) else None,
        "text": message["text"],
        "timestamp": timestamp,
    }


def webhook_messages(body: Mapping[str, Any], *, default_group_id: str) -> list[dict]:
    """
    Collect the text messages of a Messenger page webhook body.

    Entries and events that are not JSON objects are skipped.
    """
    raws = []
    entries = body.get("entry")
    if not isinstance(entries, list):
        return raws
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        events = entry.get("messaging")
        if not isinstance(events, list):
            continue
        for event in events:
            raw = from_webhook_event(event, default_group_id=default_group_id)
            if raw is not None:
                raws.append(raw)
    return raws


def parse_relative_ts(value: Any, reference: Optional[datetime] = None) -> Optional[str]:
    """
    Best-effort conversion of a scraped timestamp to ISO-8601 UTC.

    Handles ISO strings, clock times ("3:01 PM", "15:01") anchored on the
    reference date, and "just now". Anything else yields None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_ts(value)

    text = str(value).strip()
    if not text:
        return None

    reference = reference or utc_now()
    if text.lower() in _JUST_NOW:
        return format_ts(reference)

    match = _CLOCK_RE.match(text)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3)
        if meridiem:
            if not 1 <= hour <= 12:
                return None
            hour = hour % 12 + (12 if meridiem.lower() == "pm" else 0)
        if hour > 23 or minute > 59:
            return None
        anchored = reference.replace(hour=hour, minute=minute, second=0, microsecond=0)
        # A clock time later than the reference belongs to the previous day
        if anchored > reference:
            anchored -= timedelta(days=1)
        return format_ts(anchored)

    try:
        return format_ts(parse_iso_ts(text))
    except ValueError:
        logger.debug(f"Unrecognized scraped timestamp: {text!r}")
        return None


def from_scraped(
    item: Mapping[str, Any],
    *,
    group_id: str,
    reference: Optional[datetime] = None,
) -> dict:
    """Map a scraped DOM item ({id, sender, content, timestamp}) to the inbound shape."""
    return {
        "id": item.get("id"),
        "groupId": group_id,
        "sender": item.get("sender"),
        "text": item.get("content") or item.get("text") or "",
        "timestamp": parse_relative_ts(item.get("timestamp"), reference),
    }


class MessageFeed:
    """
    Lazy, restartable sequence of newly observed messages.

    Each poll calls ``fetch()`` (the external scraper), normalizes the
    items and yields drafts whose externalId has not been acknowledged yet.
    Consumers acknowledge a draft once it is stored; iterating the feed
    again re-yields anything left unacknowledged. Only the most recent
    max_acknowledged ids are remembered, so a long-running feed holds
    bounded state; an evicted id that the scraper still returns is
    yielded again and re-stored idempotently.
    """

    def __init__(
        self,
        fetch: Callable[[], Iterable[Mapping[str, Any]]],
        *,
        group_id: str,
        interval_seconds: float = 5.0,
        max_polls: Optional[int] = None,
        acknowledged: Optional[Iterable[str]] = None,
        max_acknowledged: int = DEFAULT_MAX_ACKNOWLEDGED,
    ) -> None:
        self._fetch = fetch
        self._group_id = group_id
        self._interval = interval_seconds
        self._max_polls = max_polls
        self._max_acknowledged = max(1, max_acknowledged)
        self._acknowledged: OrderedDict[str, None] = OrderedDict()
        for external_id in acknowledged or ():
            self.acknowledge(external_id)

    @property
    def group_id(self) -> str:
        return self._group_id

    @property
    def acknowledged(self) -> frozenset:
        return frozenset(self._acknowledged)

    def acknowledge(self, external_id: str) -> None:
        """Remember a stored id; the oldest ids are forgotten past max_acknowledged."""
        self._acknowledged[external_id] = None
        self._acknowledged.move_to_end(external_id)
        while len(self._acknowledged) > self._max_acknowledged:
            self._acknowledged.popitem(last=False)

    def poll(self) -> list[MessageDraft]:
        """Fetch once and return the drafts not yet acknowledged."""
        reference = utc_now()
        drafts: list[MessageDraft] = []
        seen: set[str] = set()

        for item in self._fetch():
            raw = from_scraped(item, group_id=self._group_id, reference=reference)
            try:
                draft = normalize(raw, default_group_id=self._group_id, now=reference)
            except InvalidMessage as e:
                logger.warning(f"Skipping scraped item {item.get('id')!r}: {e}")
                continue
            if draft.external_id in self._acknowledged or draft.external_id in seen:
                continue
            seen.add(draft.external_id)
            drafts.append(draft)

        logger.debug(f"Feed poll for {self._group_id}: {len(drafts)} new message(s)")
        return drafts

    def __iter__(self) -> Iterator[MessageDraft]:
        polls = 0
        while self._max_polls is None or polls < self._max_polls:
            if polls:
                time.sleep(self._interval)
            batch = self.poll()
            polls += 1
            yield from batch
