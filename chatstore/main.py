import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from chatstore.config import get_settings
from chatstore.errors import (
    IngestionBackpressureError,
    IngestionClosedError,
    MalformedInputError,
    NotFoundError,
)
from chatstore.events import events_from_payload
from chatstore.ingestion import IngestionPipeline
from chatstore.logging_utils import setup_logging, RequestLoggingMiddleware, log_event_data
from chatstore.metrics import get_metrics, get_metrics_content_type
from chatstore.queries import QueryEngine, SORT_BY_LAST_ACTIVE
from chatstore.schemas import (
    ChatsListResponse,
    ChatView,
    ContactsListResponse,
    ErrorResponse,
    EventPayload,
    EventsAcceptedResponse,
    HealthResponse,
    LiveMessagePayload,
    MessageContext,
    MessagesListResponse,
    MessagesQueryParams,
    MessageView,
)
from chatstore.storage import Store
from chatstore.utils import normalize_page, verify_hmac_signature


settings = get_settings()

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

_event_payload = TypeAdapter(EventPayload)

# How long shutdown waits for the pipeline to drain
PIPELINE_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: open the store, create the schema, start the single writer.
    Shutdown: stop accepting events, drain the queue, release connections.
    """
    store = Store(settings.DATABASE_URL)
    store.init_db()
    pipeline = IngestionPipeline(
        store,
        max_queue_size=settings.INGEST_QUEUE_SIZE,
        put_timeout=settings.INGEST_PUT_TIMEOUT_SECONDS,
    )
    pipeline.start()

    app.state.store = store
    app.state.pipeline = pipeline
    app.state.queries = QueryEngine(store)
    try:
        yield
    finally:
        pipeline.close(timeout=PIPELINE_DRAIN_SECONDS)
        store.close()


app = FastAPI(
    title="Chat Store API",
    description="Persists WhatsApp chat events and serves historical chat queries",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_queries(request: Request) -> QueryEngine:
    return request.app.state.queries


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def store_failure_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "message store unavailable"},
    )


@app.exception_handler(MalformedInputError)
async def malformed_input_handler(request: Request, exc: MalformedInputError) -> JSONResponse:
    logger.error(f"Malformed stored data on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_SECRET is set (non-empty)
    2. The ingestion pipeline is running
    3. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    reason = None
    if not settings.WEBHOOK_SECRET:
        reason = "WEBHOOK_SECRET not configured"
    elif not request.app.state.pipeline.running:
        reason = "Ingestion pipeline not running"
    elif not request.app.state.store.check_health():
        reason = "Database not reachable or schema not applied"

    if reason is not None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=reason)
    return HealthResponse(status="ready")


# =============================================================================
# Event Ingestion Route
# =============================================================================

@app.post(
    "/events",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EventsAcceptedResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Ingestion queue full"},
    }
)
async def ingest_events(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> EventsAcceptedResponse:
    """
    Accept a signed chat event from the protocol bridge.

    The body is either a live message (``kind: live_message``) or a
    history-sync batch (``kind: history_sync``). Events are queued for the
    single writer; 202 means queued, not yet stored. Re-delivering the same
    body is safe.

    Headers:
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Rejected /events delivery: invalid signature")
        log_event_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = _event_payload.validate_python(json.loads(raw_body))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        log_event_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid JSON: {e}")
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        log_event_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    jid = payload.chat_jid if isinstance(payload, LiveMessagePayload) else None
    events = events_from_payload(payload)

    queued = 0
    try:
        for event in events:
            # submit may block on a full queue; keep it off the event loop
            await run_in_threadpool(pipeline.submit, event)
            queued += 1
    except (IngestionBackpressureError, IngestionClosedError) as e:
        log_event_data(request, kind=payload.kind, jid=jid, events=queued, result="backpressure")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    log_event_data(request, kind=payload.kind, jid=jid, events=queued, result="accepted")
    return EventsAcceptedResponse(events=queued)


# =============================================================================
# Chat Routes
# =============================================================================

@app.get("/chats", response_model=ChatsListResponse)
def list_chats(
    query: Annotated[str | None, Query(description="Substring of chat name or JID")] = None,
    limit: Annotated[int, Query(description="Page size; <= 0 uses the default")] = 20,
    page: Annotated[int, Query(description="Zero-based page number")] = 0,
    include_last_message: bool = True,
    sort_by: Annotated[str, Query(pattern="^(last_active|name)$")] = SORT_BY_LAST_ACTIVE,
    queries: QueryEngine = Depends(get_queries),
) -> ChatsListResponse:
    chats = queries.list_chats(
        query=query,
        limit=limit,
        page=page,
        include_last_message=include_last_message,
        sort_by=sort_by,
    )
    limit, page, _ = normalize_page(limit, page)
    return ChatsListResponse(data=chats, limit=limit, page=page)


@app.get(
    "/chats/{jid}",
    response_model=ChatView,
    responses={404: {"model": ErrorResponse}},
)
def get_chat(
    jid: str,
    include_last_message: bool = True,
    queries: QueryEngine = Depends(get_queries),
) -> ChatView:
    return queries.get_chat(jid, include_last_message=include_last_message)


# =============================================================================
# Messages Routes
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
def list_messages(
    after: Annotated[datetime | None, Query(description="Only messages at or after this time")] = None,
    before: Annotated[datetime | None, Query(description="Only messages at or before this time")] = None,
    sender: Annotated[str | None, Query(description="Exact sender")] = None,
    chat_jid: Annotated[str | None, Query(description="Exact chat JID")] = None,
    query: Annotated[str | None, Query(description="Case-insensitive content substring")] = None,
    limit: int = 20,
    page: int = 0,
    include_context: bool = False,
    context_before: Annotated[int, Query(ge=0)] = 1,
    context_after: Annotated[int, Query(ge=0)] = 1,
    queries: QueryEngine = Depends(get_queries),
) -> MessagesListResponse:
    """
    List messages newest first. With include_context each match is
    surrounded by its neighbours in the same chat.
    """
    params = MessagesQueryParams(
        after=after,
        before=before,
        sender=sender,
        chat_jid=chat_jid,
        query=query,
        limit=limit,
        page=page,
        include_context=include_context,
        context_before=context_before,
        context_after=context_after,
    )
    messages = queries.list_messages(**params.model_dump())
    limit, page, _ = normalize_page(params.limit, params.page)
    return MessagesListResponse(data=messages, limit=limit, page=page)


@app.get("/messages/recent", response_model=list[MessageView])
def recent_messages(
    limit: int = 10,
    queries: QueryEngine = Depends(get_queries),
) -> list[MessageView]:
    return queries.list_recent_messages(limit=limit)


@app.get(
    "/messages/{message_id}/context",
    response_model=MessageContext,
    responses={404: {"model": ErrorResponse}},
)
def message_context(
    message_id: str,
    before: Annotated[int, Query(ge=0)] = 5,
    after: Annotated[int, Query(ge=0)] = 5,
    queries: QueryEngine = Depends(get_queries),
) -> MessageContext:
    return queries.get_message_context(message_id, before=before, after=after)


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/contacts", response_model=ContactsListResponse)
def search_contacts(
    query: Annotated[str, Query(min_length=1, description="Substring of name or phone number")],
    queries: QueryEngine = Depends(get_queries),
) -> ContactsListResponse:
    return ContactsListResponse(data=queries.search_contacts(query))


@app.get("/contacts/{jid}/chats", response_model=ChatsListResponse)
def contact_chats(
    jid: str,
    limit: int = 20,
    page: int = 0,
    queries: QueryEngine = Depends(get_queries),
) -> ChatsListResponse:
    chats = queries.get_contact_chats(jid, limit=limit, page=page)
    limit, page, _ = normalize_page(limit, page)
    return ChatsListResponse(data=chats, limit=limit, page=page)


@app.get(
    "/contacts/{phone_number}/direct-chat",
    response_model=ChatView,
    responses={404: {"model": ErrorResponse}},
)
def direct_chat(
    phone_number: str,
    queries: QueryEngine = Depends(get_queries),
) -> ChatView:
    return queries.get_direct_chat_by_contact(phone_number)


@app.get(
    "/contacts/{jid}/last-interaction",
    response_model=MessageView,
    responses={404: {"model": ErrorResponse}},
)
def last_interaction(
    jid: str,
    queries: QueryEngine = Depends(get_queries),
) -> MessageView:
    return queries.get_last_interaction(jid)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
