"""
Pydantic schemas for request/response validation.

This module contains:
- The canonical inbound message shape used by the source adapter
- Request models for the HTTP API
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from chatlens.domain import Category, DailyCount, GroupRecord, GroupStats, StoredMessage
from chatlens.utils import parse_iso_ts


# =============================================================================
# Pydantic Request Models
# =============================================================================

class InboundMessage(BaseModel):
    """
    Canonical inbound message shape shared by the scraper, webhook and
    manual API origins.

    Validates:
    - text: non-empty after trimming, max 4096 characters
    - timestamp: optional ISO-8601 string (offset or Z suffix)
    """
    id: Optional[str] = Field(
        None,
        description="Stable source message id (used verbatim as externalId)"
    )
    group_id: Optional[str] = Field(
        None,
        alias="groupId",
        description="Conversation/thread identifier"
    )
    sender: Optional[str] = Field(
        None,
        description="Display name of the author"
    )
    text: str = Field(
        ...,
        max_length=4096,
        description="Message body"
    )
    timestamp: Optional[str] = Field(
        None,
        description="Message timestamp in ISO-8601 format (e.g., 2025-01-15T10:00:00Z)"
    )

    @field_validator("text")
    @classmethod
    def validate_text_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only text."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("text must not be empty")
        return stripped

    @field_validator("id", "group_id", "sender")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("timestamp")
    @classmethod
    def validate_iso8601(cls, v: Optional[str]) -> Optional[str]:
        """Validate ISO-8601 timestamp."""
        if v is None or not v.strip():
            return None
        try:
            parse_iso_ts(v)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 timestamp (e.g., 2025-01-15T10:00:00Z)")
        return v.strip()

    model_config = {
        "populate_by_name": True,  # Allow both 'groupId' and 'group_id'
        "coerce_numbers_to_str": True,  # Scraped/webhook ids may be numeric
        "json_schema_extra": {
            "examples": [
                {
                    "id": "mid.1700000000000:abc",
                    "groupId": "g1",
                    "sender": "張三",
                    "text": "有人知道怎麼解決這個 bug 嗎？",
                    "timestamp": "2025-01-15T10:00:00Z"
                }
            ]
        }
    }


class BatchRequest(BaseModel):
    """Request body for POST /groups/{group_id}/messages."""
    messages: list[dict[str, Any]] = Field(
        ...,
        description="Raw inbound messages; groupId is taken from the path"
    )


class GroupCreateRequest(BaseModel):
    """Request body for POST /groups."""
    id: str = Field(..., min_length=1, description="Group/thread identifier")
    name: Optional[str] = Field(None, description="Display name")
    description: str = Field("", description="Free-form description")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ProcessedMessageResponse(BaseModel):
    """
    Outbound processed-message shape: the inbound fields plus summary,
    category, processedAt and storageId.
    """
    id: str = Field(..., description="externalId of the message")
    group_id: str = Field(..., serialization_alias="groupId")
    sender: str
    text: str
    timestamp: str = Field(..., description="receivedAt (ISO-8601 UTC)")
    summary: str
    category: str
    processed_at: str = Field(..., serialization_alias="processedAt")
    storage_id: str = Field(..., serialization_alias="storageId")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_stored(cls, message: StoredMessage) -> "ProcessedMessageResponse":
        return cls(
            id=message.external_id,
            group_id=message.group_id,
            sender=message.sender,
            text=message.text,
            timestamp=message.received_at,
            summary=message.summary,
            category=message.category.value,
            processed_at=message.processed_at,
            storage_id=message.storage_id,
        )


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.

    Contains:
    - data: list of messages matching filters
    - total: total count of messages matching filters (ignoring pagination)
    - limit: effective page size after clamping
    - offset: starting position
    """
    data: list[ProcessedMessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)


class BatchError(BaseModel):
    index: int = Field(..., ge=0, description="Position of the failed item in the request")
    kind: str = Field(..., description="invalid or storage_error")
    detail: str


class BatchResponse(BaseModel):
    """Response model for batch ingestion."""
    processed: list[ProcessedMessageResponse] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class SenderCountResponse(BaseModel):
    sender: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for the stats endpoints.

    - total_messages: total count of messages in scope
    - senders_count: number of distinct senders
    - categories: count per category label (all labels present)
    - messages_per_sender: top 10 senders by message count
    - first/last_received_at: earliest/latest receivedAt (null if empty)
    """
    group_id: Optional[str] = None
    total_messages: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)
    categories: dict[str, int] = Field(default_factory=dict)
    messages_per_sender: list[SenderCountResponse] = Field(default_factory=list)
    first_received_at: Optional[str] = None
    last_received_at: Optional[str] = None

    @classmethod
    def from_stats(cls, stats: GroupStats) -> "StatsResponse":
        return cls(
            group_id=stats.group_id,
            total_messages=stats.total_messages,
            senders_count=stats.senders_count,
            categories=stats.categories,
            messages_per_sender=[
                SenderCountResponse(sender=entry.sender, count=entry.count)
                for entry in stats.messages_per_sender
            ],
            first_received_at=stats.first_received_at,
            last_received_at=stats.last_received_at,
        )


class DailyCountResponse(BaseModel):
    date: str
    message_count: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)


class TrendsResponse(BaseModel):
    """Daily counts over the last `days` UTC days, oldest first; empty days omitted."""
    group_id: Optional[str] = None
    days: int
    data: list[DailyCountResponse] = Field(default_factory=list)

    @classmethod
    def from_counts(cls, counts: list[DailyCount], days: int, group_id: Optional[str] = None) -> "TrendsResponse":
        return cls(
            group_id=group_id,
            days=days,
            data=[
                DailyCountResponse(date=c.day, message_count=c.message_count, senders_count=c.senders_count)
                for c in counts
            ],
        )


class GroupResponse(BaseModel):
    id: str
    name: str
    description: str
    created_at: str
    message_count: int = Field(0, ge=0)

    @classmethod
    def from_record(cls, group: GroupRecord) -> "GroupResponse":
        return cls(
            id=group.id,
            name=group.name,
            description=group.description,
            created_at=group.created_at,
            message_count=group.message_count,
        )


class GroupsListResponse(BaseModel):
    data: list[GroupResponse] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class CategoryResponse(BaseModel):
    label: str
    name: str
    english_name: str

    @classmethod
    def from_category(cls, category: Category) -> "CategoryResponse":
        return cls(label=category.value, name=category.name, english_name=category.english_name)


class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    processed: int = Field(default=0, ge=0)
