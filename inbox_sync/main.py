import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from inbox_sync import storage
from inbox_sync.channel import SandboxChannel
from inbox_sync.config import settings
from inbox_sync.gateway import send_outbound
from inbox_sync.interfaces import ConversationNotFoundError, SendError
from inbox_sync.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from inbox_sync.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from inbox_sync.push import PushHub
from inbox_sync.schemas import (
    ChannelAck,
    ConversationCreateRequest,
    ConversationResponse,
    ConversationStatusUpdate,
    ErrorResponse,
    HealthResponse,
    MessagesListResponse,
    SendMessageRequest,
    WebhookPayload,
    WebhookResponse,
)
from inbox_sync.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    storage.init_db()
    yield


app = FastAPI(
    title="Inbox Sync API",
    description="Conversation message store, provider webhook and push fan-out for the CRM inbox",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

# Shared between the webhook, the send route and in-process subscribers
app.state.push_hub = PushHub()
app.state.channel = SandboxChannel()


def _not_found(conversation_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"conversation {conversation_id} not found"
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not storage.check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_verify(
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> str:
    """Provider subscription handshake: echo the challenge when the token matches."""
    if mode == "subscribe" and settings.WEBHOOK_VERIFY_TOKEN and token == settings.WEBHOOK_VERIFY_TOKEN:
        logger.info("Webhook verification succeeded")
        return challenge or ""
    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


def _reject_signature(request: Request) -> HTTPException:
    record_webhook_outcome("invalid_signature")
    log_webhook_data(request=request, result="invalid_signature")
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="invalid signature"
    )


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
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(storage.get_db)
) -> WebhookResponse:
    """
    Ingest provider notifications: inbound messages and delivery statuses.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Accepts Meta Cloud API (entry[].changes[].value) and 360Dialog
      (top-level messages/statuses/contacts) payloads
    - Idempotent: an already stored channel message id is not stored again
    - Every stored change is published to push subscribers
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if not x_signature:
        logger.error("Missing X-Signature header")
        raise _reject_signature(request)

    if not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Invalid HMAC signature")
        raise _reject_signature(request)

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    hub: PushHub = request.app.state.push_hub
    stored = applied = duplicates = 0

    for value in payload.values():
        names = {
            contact.wa_id: contact.profile.name
            for contact in value.contacts
            if contact.wa_id and contact.profile and contact.profile.name
        }

        for message in value.messages:
            name = names.get(message.from_msisdn.lstrip("+"))
            conversation, created = storage.find_or_create_conversation(db, message.from_msisdn, name)
            if created:
                logger.info(f"New conversation {conversation.id} for {message.from_msisdn}")

            row, is_duplicate = storage.store_inbound_message(
                db,
                conversation_id=conversation.id,
                channel_message_id=message.id,
                content=message.to_content(),
                created_at=message.sent_at(),
                sender=name or message.from_msisdn,
            )
            if row is None:
                log_webhook_data(request=request, result="error", messages=stored, statuses=applied)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to store message"
                )
            if is_duplicate:
                duplicates += 1
                continue
            stored += 1
            hub.publish(storage.to_record(row))

        for provider_status in value.statuses:
            new_status = provider_status.to_status()
            if new_status is None:
                logger.warning(f"Unknown provider status '{provider_status.status}' for {provider_status.id}")
                continue
            row = storage.apply_status_update(db, provider_status.id, new_status)
            if row is not None:
                applied += 1
                hub.publish(storage.to_record(row))

    if stored or applied:
        result = "processed"
    elif duplicates:
        result = "duplicate"
    else:
        result = "ignored"

    logger.info(f"Webhook processed: messages={stored}, statuses={applied}, duplicates={duplicates}, result={result}")
    record_webhook_outcome(result)
    log_webhook_data(request=request, result=result, messages=stored, statuses=applied, dup=duplicates)

    return WebhookResponse(status="ok", messages=stored, statuses=applied)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    body: ConversationCreateRequest,
    db: Session = Depends(storage.get_db)
) -> ConversationResponse:
    conversation = storage.create_conversation(db, phone=body.phone, name=body.name)
    return ConversationResponse.model_validate(conversation)


@app.get(
    "/conversations/{conversation_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_conversation(
    conversation_id: str,
    db: Session = Depends(storage.get_db)
) -> ConversationResponse:
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None:
        raise _not_found(conversation_id)
    return ConversationResponse.model_validate(conversation)


@app.patch(
    "/conversations/{conversation_id}/status",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def update_conversation_status(
    conversation_id: str,
    body: ConversationStatusUpdate,
    db: Session = Depends(storage.get_db)
) -> ConversationResponse:
    """Hold, resume, close or re-queue a conversation."""
    conversation = storage.update_conversation_status(db, conversation_id, body.status)
    if conversation is None:
        raise _not_found(conversation_id)
    return ConversationResponse.model_validate(conversation)


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_messages(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = 100,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(storage.get_db)
) -> MessagesListResponse:
    """
    Authoritative snapshot of a conversation's messages.

    Ordering:
        - createdAt ASC, id ASC (deterministic)
    """
    if storage.get_conversation(db, conversation_id) is None:
        raise _not_found(conversation_id)

    rows, total = storage.get_messages(db, conversation_id, limit=limit, offset=offset)
    logger.info(f"GET messages for {conversation_id}: returned {len(rows)} of {total} (limit={limit}, offset={offset})")

    return MessagesListResponse(
        data=[storage.to_record(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset
    )


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=ChannelAck,
    responses={
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse, "description": "Delivery channel rejected the message"},
    },
)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    db: Session = Depends(storage.get_db)
) -> ChannelAck:
    """
    Hand a message to the delivery channel.

    The message is stored as pending first; the result (and every later
    status change) is also published to push subscribers. Failed sends are
    not retried.
    """
    try:
        return await send_outbound(
            db,
            request.app.state.channel,
            request.app.state.push_hub,
            conversation_id,
            body.content,
            sender=body.sender,
        )
    except ConversationNotFoundError:
        raise _not_found(conversation_id)
    except SendError as e:
        logger.error(f"Send failed for conversation {conversation_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"send failed: {e}"
        )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
