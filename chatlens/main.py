import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from chatlens.config import get_settings
from chatlens.domain import Category
from chatlens.errors import InvalidMessage, StorageError
from chatlens.logging_utils import RequestLoggingMiddleware, log_ingest_data, setup_logging
from chatlens.metrics import get_metrics, get_metrics_content_type
from chatlens.pipeline import MessagePipeline
from chatlens.schemas import (
    BatchError,
    BatchRequest,
    BatchResponse,
    CategoryResponse,
    ErrorResponse,
    GroupCreateRequest,
    GroupResponse,
    GroupsListResponse,
    HealthResponse,
    MessagesListResponse,
    ProcessedMessageResponse,
    StatsResponse,
    TrendsResponse,
    WebhookResponse,
)
from chatlens.sources import webhook_messages
from chatlens.storage import MessageStore, clamp_limit, create_store
from chatlens.utils import format_ts, parse_iso_ts, verify_hmac_signature


settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the store from configuration, create tables, wire the pipeline
    - Shutdown: release the store's connections
    """
    store = create_store(settings)
    store.init()
    app.state.pipeline = MessagePipeline.from_settings(settings, store)
    yield
    store.close()


app = FastAPI(
    title="chatlens",
    description="Group-message ingestion, categorization and storage service",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> MessagePipeline:
    return request.app.state.pipeline


def get_store(request: Request) -> MessageStore:
    return request.app.state.pipeline.store


def _parse_category(value: Optional[str]) -> Optional[Category]:
    if value is None:
        return None
    category = Category.parse(value)
    if category is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown category: {value}"
        )
    return category


def _parse_bound(name: str, value: Optional[str]) -> Optional[str]:
    """Normalize a since/until query value to the stored timestamp format."""
    if not value:
        return None
    try:
        return format_ts(parse_iso_ts(value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{name} must be an ISO-8601 timestamp"
        )


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(InvalidMessage)
async def invalid_message_handler(request: Request, exc: InvalidMessage) -> JSONResponse:
    log_ingest_data(request, result="invalid")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)}
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage error: {exc}")
    log_ingest_data(request, result="storage_error")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "storage unavailable"}
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the store is reachable and its
    schema is applied, otherwise 503.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Store not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Ingestion Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=ProcessedMessageResponse,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid message"},
        503: {"model": ErrorResponse, "description": "Storage unavailable"},
    }
)
def ingest_message(
    request: Request,
    payload: Annotated[dict[str, Any], Body(description="Inbound message {id?, groupId?, sender?, text, timestamp?}")],
    timeout: Annotated[Optional[float], Query(gt=0, le=60, description="Deadline for the whole pipeline, in seconds")] = None,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> ProcessedMessageResponse:
    """
    Ingest one message: normalize, classify, summarize and upsert it.

    Re-submitting the same id overwrites the stored row (last write wins).
    """
    stored = pipeline.process(payload, timeout=timeout)
    log_ingest_data(
        request=request,
        external_id=stored.external_id,
        category=stored.category.value,
        result="processed"
    )
    return ProcessedMessageResponse.from_stored(stored)


@app.post("/groups/{group_id}/messages", response_model=BatchResponse)
def ingest_group_messages(
    request: Request,
    group_id: str,
    body: BatchRequest,
    timeout: Annotated[Optional[float], Query(gt=0, le=300)] = None,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> BatchResponse:
    """
    Ingest a batch of messages into one group. Items are processed
    concurrently; failures are reported per item.
    """
    outcomes = pipeline.process_batch(body.messages, group_id=group_id, timeout=timeout)

    processed = [ProcessedMessageResponse.from_stored(o.message) for o in outcomes if o.ok]
    errors = [
        BatchError(
            index=o.index,
            kind="invalid" if isinstance(o.error, InvalidMessage) else "storage_error",
            detail=str(o.error),
        )
        for o in outcomes if not o.ok
    ]

    # Nothing stored and the store is failing: surface it as a 5xx
    if not processed and any(isinstance(o.error, StorageError) for o in outcomes):
        raise next(o.error for o in outcomes if isinstance(o.error, StorageError))

    log_ingest_data(request=request, result="processed", count=len(processed))
    return BatchResponse(processed=processed, errors=errors, total=len(outcomes))


# =============================================================================
# Messenger Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_verify(
    mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> str:
    """Messenger subscription handshake."""
    if (
        mode == "subscribe"
        and settings.WEBHOOK_VERIFY_TOKEN
        and token == settings.WEBHOOK_VERIFY_TOKEN
    ):
        logger.info("Webhook verified")
        return challenge or ""
    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Ingest Messenger page events.

    - Verifies X-Hub-Signature-256 when WEBHOOK_SECRET is configured
    - Text messages go through the pipeline; other events are ignored
    """
    raw_body = await request.body()

    if settings.WEBHOOK_SECRET and not verify_hmac_signature(
        raw_body, x_hub_signature_256, settings.WEBHOOK_SECRET
    ):
        logger.error("Invalid webhook signature")
        log_ingest_data(request=request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {e}"
        )

    if not isinstance(body, dict) or body.get("object") != "page":
        return WebhookResponse(status="ignored")

    raws = webhook_messages(body, default_group_id=pipeline.default_group_id)

    # Run the blocking pipeline off the event loop
    outcomes = await run_in_threadpool(pipeline.process_batch, raws)

    storage_failures = [o.error for o in outcomes if isinstance(o.error, StorageError)]
    if storage_failures:
        raise storage_failures[0]

    processed = sum(1 for o in outcomes if o.ok)
    log_ingest_data(request=request, result="processed", count=processed)
    return WebhookResponse(status="ok", processed=processed)


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
def list_messages(
    group_id: Annotated[Optional[str], Query(description="Filter by group/thread")] = None,
    category: Annotated[Optional[str], Query(description="Filter by category label or name")] = None,
    limit: Annotated[int, Query(ge=1, description="Page size, clamped to the configured maximum")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    order: Annotated[Literal["asc", "desc"], Query(description="receivedAt ordering")] = "desc",
    sender: Annotated[Optional[str], Query(description="Filter by exact sender")] = None,
    since: Annotated[Optional[str], Query(description="Earliest receivedAt (ISO-8601, inclusive)")] = None,
    until: Annotated[Optional[str], Query(description="Latest receivedAt (ISO-8601, inclusive)")] = None,
    q: Annotated[Optional[str], Query(description="Case-insensitive text search")] = None,
    store: MessageStore = Depends(get_store),
) -> MessagesListResponse:
    """
    List stored messages, newest first by default.

    Filters combine with AND; since/until accept any ISO-8601 offset and
    are compared in UTC.

    Response:
        - data: messages in the requested page
        - total: count matching the filters (ignoring limit/offset)
        - limit: effective page size after clamping
        - offset: the offset used
    """
    filters = {
        "group_id": group_id,
        "category": _parse_category(category),
        "sender": sender,
        "since": _parse_bound("since", since),
        "until": _parse_bound("until", until),
        "q": q,
    }
    effective_limit = clamp_limit(limit, settings.LIST_LIMIT_MAX)

    messages = store.list_messages(limit=effective_limit, offset=offset, order=order, **filters)
    total = store.count_messages(**filters)

    logger.info(f"GET /messages: returned {len(messages)} of {total} messages (limit={effective_limit}, offset={offset})")

    return MessagesListResponse(
        data=[ProcessedMessageResponse.from_stored(m) for m in messages],
        total=total,
        limit=effective_limit,
        offset=offset,
    )


@app.get(
    "/messages/{external_id}",
    response_model=ProcessedMessageResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_message(external_id: str, store: MessageStore = Depends(get_store)) -> ProcessedMessageResponse:
    message = store.get(external_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return ProcessedMessageResponse.from_stored(message)


@app.get("/stats", response_model=StatsResponse)
def get_statistics(
    group_id: Annotated[Optional[str], Query(description="Restrict to one group")] = None,
    store: MessageStore = Depends(get_store),
) -> StatsResponse:
    """Per-category counts, totals and top senders, computed at call time."""
    return StatsResponse.from_stats(store.stats(group_id))


@app.get("/stats/trends", response_model=TrendsResponse)
def get_trends(
    group_id: Annotated[Optional[str], Query(description="Restrict to one group")] = None,
    days: Annotated[int, Query(ge=1, le=settings.TRENDS_MAX_DAYS, description="Window in UTC days, today included")] = 7,
    store: MessageStore = Depends(get_store),
) -> TrendsResponse:
    """Daily message and distinct-sender counts, oldest day first."""
    return TrendsResponse.from_counts(store.trends(group_id, days=days), days=days, group_id=group_id)


@app.get("/groups/{group_id}/stats", response_model=StatsResponse)
def get_group_statistics(group_id: str, store: MessageStore = Depends(get_store)) -> StatsResponse:
    return StatsResponse.from_stats(store.stats(group_id))


@app.get("/groups", response_model=GroupsListResponse)
def list_groups(store: MessageStore = Depends(get_store)) -> GroupsListResponse:
    groups = store.list_groups()
    return GroupsListResponse(data=[GroupResponse.from_record(g) for g in groups], count=len(groups))


@app.post("/groups", response_model=GroupResponse)
def create_group(body: GroupCreateRequest, store: MessageStore = Depends(get_store)) -> GroupResponse:
    """Create a group, or update the name/description of an existing one."""
    group = store.save_group(body.id, name=body.name, description=body.description)
    logger.info(f"Group saved: {group.id}")
    return GroupResponse.from_record(group)


@app.get(
    "/groups/{group_id}",
    response_model=GroupResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_group(group_id: str, store: MessageStore = Depends(get_store)) -> GroupResponse:
    group = store.get_group(group_id)
    if group is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="group not found")
    return GroupResponse.from_record(group)


@app.get("/categories", response_model=list[CategoryResponse])
async def list_categories() -> list[CategoryResponse]:
    """The closed category set, in rule priority order."""
    return [CategoryResponse.from_category(c) for c in Category]


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
