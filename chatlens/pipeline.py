"""
Ingestion pipeline: Source Adapter -> {Categorizer, Summarizer} -> Store.

Each message's final state depends only on its own external_id, so
messages can be processed concurrently without ordering guarantees.
A caller-supplied timeout is the deadline for the whole pipeline: remote
calls get whatever budget is left, and once it is spent the local
fallbacks are used instead.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from chatlens.categorizer import Categorizer, DEFAULT_RULES, load_rules
from chatlens.config import Settings
from chatlens.domain import Message, MessageDraft, StoredMessage
from chatlens.errors import ChatlensError, InvalidMessage, StorageError
from chatlens.llm import LLMClient
from chatlens.metrics import record_ingest_outcome
from chatlens.sources import MessageFeed, normalize
from chatlens.storage import MessageStore
from chatlens.summarizer import Summarizer
from chatlens.utils import format_ts, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    """Result of one item in a batch: the stored message or the error."""

    index: int
    message: Optional[StoredMessage] = None
    error: Optional[ChatlensError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return None if timeout is None else time.monotonic() + timeout


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class MessagePipeline:
    """Orchestrates normalization, classification, summarization and storage."""

    def __init__(
        self,
        store: MessageStore,
        categorizer: Optional[Categorizer] = None,
        summarizer: Optional[Summarizer] = None,
        *,
        default_group_id: str = "default",
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._categorizer = categorizer or Categorizer()
        self._summarizer = summarizer or Summarizer()
        self._default_group_id = default_group_id
        self._max_workers = max(1, max_workers)

    @classmethod
    def from_settings(cls, settings: Settings, store: MessageStore) -> "MessagePipeline":
        remote = LLMClient.from_settings(settings)
        rules = load_rules(settings.CATEGORY_RULES_FILE) if settings.CATEGORY_RULES_FILE else DEFAULT_RULES
        return cls(
            store,
            Categorizer(rules=rules, remote=remote),
            Summarizer(max_chars=settings.SUMMARY_MAX_CHARS, remote=remote),
            default_group_id=settings.DEFAULT_GROUP_ID,
            max_workers=settings.BATCH_MAX_WORKERS,
        )

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def default_group_id(self) -> str:
        return self._default_group_id

    def normalize(self, raw: Mapping[str, Any]) -> MessageDraft:
        try:
            return normalize(raw, default_group_id=self._default_group_id)
        except InvalidMessage as e:
            logger.warning(f"Rejected invalid message: {e}")
            record_ingest_outcome("invalid")
            raise

    def process(self, raw: Mapping[str, Any], *, timeout: Optional[float] = None) -> StoredMessage:
        """
        Run one raw message through the whole pipeline.

        Raises:
            InvalidMessage: malformed or empty input (nothing stored)
            StorageError: persistence failure
        """
        deadline = _deadline(timeout)
        draft = self.normalize(raw)
        return self._run(draft, deadline)

    def process_draft(self, draft: MessageDraft, *, timeout: Optional[float] = None) -> StoredMessage:
        return self._run(draft, _deadline(timeout))

    def _run(self, draft: MessageDraft, deadline: Optional[float]) -> StoredMessage:
        category = self._categorizer.classify(draft.text, sender=draft.sender, timeout=_remaining(deadline))
        summary = self._summarizer.summarize(draft.text, sender=draft.sender, timeout=_remaining(deadline))

        # Fixed-format UTC strings compare chronologically
        processed_at = max(format_ts(utc_now()), draft.received_at)

        message = Message(
            external_id=draft.external_id,
            group_id=draft.group_id,
            sender=draft.sender,
            text=draft.text,
            received_at=draft.received_at,
            summary=summary,
            category=category,
            processed_at=processed_at,
        )

        try:
            stored = self._store.upsert(message)
        except StorageError:
            record_ingest_outcome("storage_error")
            raise

        record_ingest_outcome("processed")
        logger.info(f"Message processed: {stored.external_id}, category: {stored.category.value}")
        return stored

    def process_batch(
        self,
        raws: Sequence[Mapping[str, Any]],
        *,
        group_id: Optional[str] = None,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> list[BatchOutcome]:
        """
        Process many messages concurrently, one task per message.

        Failures are reported per item; outcomes keep the input order.
        When group_id is given it overrides each message's groupId;
        max_workers overrides the configured pool size.
        """
        if not raws:
            return []

        deadline = _deadline(timeout)

        def task(index: int, raw: Mapping[str, Any]) -> BatchOutcome:
            if group_id and isinstance(raw, Mapping):
                raw = {**raw, "groupId": group_id}
            try:
                draft = self.normalize(raw)
                return BatchOutcome(index=index, message=self._run(draft, deadline))
            except (InvalidMessage, StorageError) as e:
                return BatchOutcome(index=index, error=e)

        workers = min(max_workers or self._max_workers, len(raws))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chatlens-batch") as pool:
            outcomes = list(pool.map(task, range(len(raws)), raws))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(f"Batch processed: {len(outcomes) - failed} ok, {failed} failed")
        return outcomes

    def consume(self, feed: MessageFeed, *, timeout: Optional[float] = None) -> int:
        """
        Drain a MessageFeed into the store, acknowledging each stored message.

        StorageError propagates; unacknowledged messages are re-yielded
        when the feed is iterated again.

        Returns:
            Number of messages stored
        """
        stored = 0
        for draft in feed:
            self.process_draft(draft, timeout=timeout)
            feed.acknowledge(draft.external_id)
            stored += 1
        logger.info(f"Feed for {feed.group_id} drained: {stored} message(s) stored")
        return stored
