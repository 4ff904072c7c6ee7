import logging
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse

from smsrelay.config import settings
from smsrelay.dispatcher import EventDispatcher
from smsrelay.exceptions import MessageServiceError
from smsrelay.listeners import MessageListener
from smsrelay.logging_utils import RequestLoggingMiddleware, setup_logging
from smsrelay.metrics import get_metrics, get_metrics_content_type
from smsrelay.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageEventRequest,
    MessageReceiveRequest,
    MessageResponse,
    MessageSendRequest,
    MessagesListResponse,
)
from smsrelay.services import (
    MessageGetOutstandingParams,
    MessageGetParams,
    MessageReceiveParams,
    MessageSendParams,
    MessageService,
    MessageStorePhoneEventParams,
)
from smsrelay.storage import SQLMessageRepository, check_db_health, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


event_dispatcher = EventDispatcher()
message_service = MessageService(
    SQLMessageRepository(),
    event_dispatcher,
    outstanding_concurrency=settings.OUTSTANDING_CONCURRENCY,
)
MessageListener(message_service).register(event_dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Wait for background heartbeats
    """
    init_db()
    yield
    message_service.close()


app = FastAPI(
    title="SMS Relay API",
    description="Relays SMS messages between phones acting as gateways and the cloud",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Message not found"},
    409: {"model": ErrorResponse, "description": "Message status does not allow the operation"},
}


def get_message_service() -> MessageService:
    return message_service


UserID = Annotated[str, Header(alias="X-User-ID", min_length=1, description="ID of the user owning the messages")]
Service = Annotated[MessageService, Depends(get_message_service)]


@app.exception_handler(MessageServiceError)
async def message_service_error_handler(request: Request, exc: MessageServiceError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed with code [{exc.code}]: {exc}")
    return JSONResponse(status_code=exc.code, content={"detail": str(exc)})


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """Readiness probe - returns 503 until the database is reachable."""
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable")

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/v1/messages/outstanding", response_model=MessagesListResponse)
def get_outstanding(
    user_id: UserID,
    service: Service,
    owner: Annotated[str, Query(description="Phone number of the gateway fetching its messages")],
    limit: Annotated[int, Query(ge=1, le=100)] = settings.OUTSTANDING_LIMIT,
) -> MessagesListResponse:
    """
    Hand the pending messages of ``owner`` to its phone.

    Every returned message has been moved to sending. The order of the
    returned messages is not stable.
    """
    messages = service.get_outstanding(MessageGetOutstandingParams(
        source=settings.EVENT_SOURCE,
        owner=owner,
        user_id=user_id,
        limit=limit,
    ))
    data = [MessageResponse.model_validate(message) for message in messages]
    return MessagesListResponse(data=data, count=len(data))


@app.get("/v1/messages", response_model=MessagesListResponse)
def list_messages(
    user_id: UserID,
    service: Service,
    owner: Annotated[str, Query(description="Phone number of the gateway")],
    contact: Annotated[str, Query(description="Phone number of the counterparty")],
    skip: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    query: Annotated[str | None, Query(description="Case-insensitive search in message content")] = None,
) -> MessagesListResponse:
    """List the messages exchanged between ``owner`` and ``contact``, newest first."""
    messages = service.get_messages(MessageGetParams(
        user_id=user_id,
        owner=owner,
        contact=contact,
        skip=skip,
        limit=limit,
        query=query,
    ))
    data = [MessageResponse.model_validate(message) for message in messages]
    return MessagesListResponse(data=data, count=len(data))


@app.get("/v1/messages/{message_id}", response_model=MessageResponse, responses=ERROR_RESPONSES)
def get_message(message_id: uuid.UUID, user_id: UserID, service: Service) -> MessageResponse:
    return MessageResponse.model_validate(service.get_message(user_id, message_id))


@app.post("/v1/messages/send", response_model=MessageResponse, responses=ERROR_RESPONSES)
def send_message(body: MessageSendRequest, user_id: UserID, service: Service) -> MessageResponse:
    """Queue a new message for the phone of ``from``."""
    message = service.send_message(MessageSendParams(
        owner=body.from_msisdn,
        contact=body.to,
        content=body.content,
        source=settings.EVENT_SOURCE,
        user_id=user_id,
    ))
    logger.info(f"POST /v1/messages/send: queued message {message.id}")
    return MessageResponse.model_validate(message)


@app.post("/v1/messages/receive", response_model=MessageResponse, responses=ERROR_RESPONSES)
def receive_message(body: MessageReceiveRequest, user_id: UserID, service: Service) -> MessageResponse:
    """Register a message received by the phone of ``to``."""
    message = service.receive_message(MessageReceiveParams(
        contact=body.from_msisdn,
        user_id=user_id,
        owner=body.to,
        content=body.content,
        timestamp=body.timestamp,
        source=settings.EVENT_SOURCE,
    ))
    return MessageResponse.model_validate(message)


@app.post("/v1/messages/{message_id}/events", response_model=MessageResponse, responses=ERROR_RESPONSES)
def store_event(
    message_id: uuid.UUID,
    body: MessageEventRequest,
    user_id: UserID,
    service: Service,
) -> MessageResponse:
    """Record a sent, delivered or failed event reported by the phone."""
    message = service.get_message(user_id, message_id)
    message = service.store_event(message, MessageStorePhoneEventParams(
        message_id=message_id,
        event_name=body.event_name.value,
        timestamp=body.timestamp,
        source=settings.EVENT_SOURCE,
    ))
    logger.info(f"POST /v1/messages/{message_id}/events: message is now {message.status.value}")
    return MessageResponse.model_validate(message)


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
