import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, BackgroundTasks
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from anonrelay import texts
from anonrelay.channel import Channel, InboundEvent
from anonrelay.commands import dispatch_event
from anonrelay.config import Settings, settings
from anonrelay.errors import ConflictError
from anonrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from anonrelay.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from anonrelay.relay import RelayEngine
from anonrelay.schemas import (
    ErrorResponse,
    HealthResponse,
    InboundEventRequest,
    StatsResponse,
    WebhookResponse,
)
from anonrelay.storage import init_db, check_db_health, get_db, get_stats
from anonrelay.telegram import TelegramChannel, parse_update
from anonrelay.utils import verify_hmac_signature, verify_secret_token


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_channel(config: Settings) -> Channel:
    """Create the transport channel; a missing token aborts startup."""
    return TelegramChannel(config.BOT_TOKEN)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create the relay engine
    - Shutdown: nothing to release; all relay state is rebuilt from the store
    """
    init_db()
    app.state.relay = RelayEngine(build_channel(settings), settings)
    logger.info("Relay engine started")
    yield


app = FastAPI(
    title="Anonymous Relay API",
    description="Relays messages between anonymous users and a single operator",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_relay(request: Request) -> RelayEngine:
    """Dependency returning the process-wide relay engine."""
    return request.app.state.relay


async def _route(
    request: Request,
    source: str,
    event: InboundEvent,
    relay: RelayEngine,
    db: Session,
    background_tasks: BackgroundTasks,
) -> WebhookResponse:
    # Store and network work is blocking; keep it off the event loop.
    # Notifications go to background tasks, which run after the response,
    # i.e. after every store commit of this request.
    try:
        result = await run_in_threadpool(
            dispatch_event, relay, db, event, background_tasks.add_task
        )
    except ConflictError as e:
        logger.error(f"Identity conflict persisted after retries: {e}")
        # Background tasks do not run for error responses
        await run_in_threadpool(relay.notify, event.chat_ref, texts.ERROR_PROCESSING, "user_ack")
        record_webhook_outcome("conflict")
        log_webhook_data(request, source, "conflict")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="conflict, retry later"
        )

    logger.info(f"Event routed from {source} webhook, result: {result}")
    record_webhook_outcome(result)
    log_webhook_data(request, source, result)
    return WebhookResponse(status="ok", result=result)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check: the process is up and serving."""
    return HealthResponse(status="ok")


def _readiness_failure(request: Request) -> str | None:
    if not settings.WEBHOOK_SECRET:
        return "WEBHOOK_SECRET not configured"
    if getattr(request.app.state, "relay", None) is None:
        return "Relay engine not started"
    if not check_db_health():
        return "Database not reachable or schema not applied"
    return None


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness check: 200 once the webhook secret is set, the relay engine is
    running and the store is reachable with its schema applied; 503 otherwise.
    """
    reason = await run_in_threadpool(_readiness_failure, request)
    if reason is not None:
        logger.warning(f"Not ready: {reason}")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=reason)
    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        409: {"model": ErrorResponse, "description": "Identity conflict, retry"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
    relay: RelayEngine = Depends(get_relay),
) -> WebhookResponse:
    """
    Receive one normalized transport event.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Validates request body against InboundEventRequest schema
    - Routes the event: user message, operator command or operator reply

    Headers:
        - Content-Type: application/json
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid X-Signature header")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, "relay", "invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = InboundEventRequest.model_validate(json.loads(raw_body))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, "relay", "validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, "relay", "validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    return await _route(request, "relay", payload.to_event(), relay, db, background_tasks)


@app.post(
    "/webhook/telegram",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid secret token"},
        409: {"model": ErrorResponse, "description": "Identity conflict, retry"},
        422: {"description": "Validation error"},
    }
)
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_secret_token: Annotated[str | None, Header(alias="X-Telegram-Bot-Api-Secret-Token")] = None,
    db: Session = Depends(get_db),
    relay: RelayEngine = Depends(get_relay),
) -> WebhookResponse:
    """
    Receive a raw Telegram update (setWebhook with secret_token=WEBHOOK_SECRET).

    Updates without a message (edits, callback queries, ...) are acknowledged
    and ignored.
    """
    if not verify_secret_token(x_secret_token, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid Telegram secret token")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, "telegram", "invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        update = json.loads(await request.body())
    except json.JSONDecodeError as e:
        record_webhook_outcome("validation_error")
        log_webhook_data(request, "telegram", "validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    event = parse_update(update) if isinstance(update, dict) else None
    if event is None:
        record_webhook_outcome("ignored")
        log_webhook_data(request, "telegram", "ignored")
        return WebhookResponse(status="ok", result="ignored")

    return await _route(request, "telegram", event, relay, db, background_tasks)


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Provide relay-level counters.

    Response:
        - users_count / blocked_count
        - total_messages and messages_by_state (pending, forwarded, read, notified)
        - first_message_at / last_message_at (null if no messages)
    """
    stats = get_stats(db)
    logger.info(f"GET /stats: returned stats for {stats['total_messages']} messages")
    return StatsResponse(**stats)


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
