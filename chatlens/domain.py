"""
Core domain types shared by the pipeline, the stores and the HTTP layer.

These dataclasses keep the pipeline independent of SQLAlchemy rows and
pydantic schemas.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Category(Enum):
    """
    Closed set of message categories.

    Declaration order is the rule priority used by the categorizer.
    The value is the label stored and returned over the wire.
    """
    TECHNICAL = "技術討論"
    WORK = "工作相關"
    LIFE = "生活分享"
    HELP = "問題求助"
    EVENT = "活動通知"
    OTHER = "其他"

    @property
    def english_name(self) -> str:
        return _ENGLISH_NAMES[self]

    @classmethod
    def parse(cls, value: str) -> Optional["Category"]:
        """
        Resolve a label, member name or English name to a Category.

        Returns None for anything outside the closed set.
        """
        if not value:
            return None
        candidate = value.strip().strip("\"'「」.。")
        for category in cls:
            if candidate == category.value:
                return category
        lowered = candidate.lower()
        for category in cls:
            if lowered in (category.name.lower(), category.english_name.lower()):
                return category
        return None


_ENGLISH_NAMES = {
    Category.TECHNICAL: "Technical Discussion",
    Category.WORK: "Work-Related",
    Category.LIFE: "Life-Sharing",
    Category.HELP: "Help-Request",
    Category.EVENT: "Event-Notice",
    Category.OTHER: "Other",
}


@dataclass(frozen=True)
class MessageDraft:
    """Canonical message produced by the source adapter."""

    external_id: str
    group_id: str
    sender: str
    text: str
    received_at: str  # ISO-8601 UTC, see utils.format_ts


@dataclass(frozen=True)
class Message:
    """A fully processed message, ready to be stored."""

    external_id: str
    group_id: str
    sender: str
    text: str
    received_at: str
    summary: str
    category: Category
    processed_at: str


@dataclass(frozen=True)
class StoredMessage(Message):
    """A message as persisted, including the storage-assigned id."""

    storage_id: str


@dataclass(frozen=True)
class GroupRecord:
    id: str
    name: str
    description: str
    created_at: str
    message_count: int = 0


@dataclass(frozen=True)
class SenderCount:
    sender: str
    count: int


@dataclass(frozen=True)
class GroupStats:
    """Aggregate counts computed over the stored set at call time."""

    group_id: Optional[str]
    total_messages: int
    senders_count: int
    categories: dict[str, int]
    messages_per_sender: list[SenderCount] = field(default_factory=list)
    first_received_at: Optional[str] = None
    last_received_at: Optional[str] = None


@dataclass(frozen=True)
class DailyCount:
    """Messages and distinct senders for one UTC day (YYYY-MM-DD)."""

    day: str
    message_count: int
    senders_count: int


def empty_category_counts() -> dict[str, int]:
    """Every category label mapped to zero, in priority order."""
    return {category.value: 0 for category in Category}
