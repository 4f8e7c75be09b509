import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from smspay.blockchain import BlockCypherGateway
from smspay.config import settings
from smspay.errors import (
    CarrierError,
    MalformedRequest,
    PaymentNotConfirmed,
    ProviderUnavailable,
    SmsPayError,
    UnknownOrTerminalSession,
)
from smspay.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from smspay.messaging import TwilioGateway
from smspay.metrics import (
    record_gateway_error,
    record_poll_result,
    record_webhook_outcome,
    get_metrics,
    get_metrics_content_type,
)
from smspay.orchestrator import ConfirmationOrchestrator, PollState
from smspay.schemas import (
    CarrierCallback,
    ErrorResponse,
    HealthResponse,
    InvoiceResponse,
    PollRequest,
    SessionResponse,
)
from smspay.storage import init_db, check_db_health, get_db, get_payment_message
from smspay.utils import verify_carrier_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    logger.info(
        f"Accepting {settings.currency.name} payments of {settings.currency.price}, "
        f"{settings.MIN_CONFIRMATIONS} confirmations required"
    )
    yield


app = FastAPI(
    title="SMS Payment API",
    description="Relays a text message once a cryptocurrency payment is confirmed",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@lru_cache()
def get_orchestrator() -> ConfirmationOrchestrator:
    """
    Build the orchestrator from settings once per process.
    Tests replace it through app.dependency_overrides.
    """
    currency = settings.currency
    blockchain = BlockCypherGateway(
        currency=currency,
        token=settings.BLOCKCYPHER_TOKEN,
        base_url=settings.BLOCKCYPHER_BASE_URL,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        scan_limit=settings.UNCONFIRMED_SCAN_LIMIT,
    )
    messaging = TwilioGateway(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        phone_from=settings.TWILIO_PHONE_FROM,
        base_url=settings.TWILIO_BASE_URL,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    return ConfirmationOrchestrator(
        blockchain=blockchain,
        messaging=messaging,
        currency=currency,
        min_confirmations=settings.MIN_CONFIRMATIONS,
        callback_base_url=settings.PUBLIC_BASE_URL,
        sender_phone=settings.TWILIO_PHONE_FROM,
    )


# Domain error -> (HTTP status, metrics result label)
ERROR_STATUS = {
    MalformedRequest: (status.HTTP_400_BAD_REQUEST, "malformed"),
    PaymentNotConfirmed: (status.HTTP_400_BAD_REQUEST, "not_confirmed"),
    CarrierError: (status.HTTP_400_BAD_REQUEST, "carrier_error"),
    UnknownOrTerminalSession: (status.HTTP_404_NOT_FOUND, "not_found"),
    ProviderUnavailable: (status.HTTP_503_SERVICE_UNAVAILABLE, "provider_error"),
}


def reject(request: Request, source: str, error: SmsPayError, session_id: str = None) -> HTTPException:
    """Record and log a failed callback, and build the HTTP error for it."""
    status_code, result = ERROR_STATUS.get(type(error), (status.HTTP_500_INTERNAL_SERVER_ERROR, "error"))
    if isinstance(error, CarrierError):
        record_gateway_error("carrier")
    elif isinstance(error, ProviderUnavailable):
        record_gateway_error("blockchain")
    record_webhook_outcome(source, result)
    log_webhook_data(request=request, session_id=session_id, result=result)
    logger.warning(f"{source} callback rejected ({result}): {error.message}")
    return HTTPException(status_code=status_code, detail=error.message)


async def read_form_or_json(request: Request) -> dict:
    """Parse a form-encoded or JSON request body into a flat dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = json.loads(await request.body())
        except json.JSONDecodeError as e:
            raise MalformedRequest(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise MalformedRequest("request body must be an object")
        return data
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


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
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. Provider and carrier credentials are configured
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.gateways_configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Blockchain provider or SMS carrier credentials not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Invoice Route
# =============================================================================

@app.get(
    "/invoice",
    response_model=InvoiceResponse,
    responses={503: {"model": ErrorResponse, "description": "Address generation unavailable"}},
)
def invoice(
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
) -> InvoiceResponse:
    """
    Payment details for a new session: a one-time address, the price, and
    the wallet URI for it.
    """
    try:
        inv = orchestrator.new_invoice(fixed_address=settings.APP_PAYMENT_ADDRESS)
    except ProviderUnavailable as e:
        logger.error(f"Invoice unavailable: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment address unavailable"
        )

    return InvoiceResponse(
        address=inv.address,
        amount=format(inv.amount, "f"),
        currency=inv.currency,
        iso_code=inv.iso_code,
        uri=inv.uri,
        min_confirmations=inv.min_confirmations,
    )


# =============================================================================
# Poll Route
# =============================================================================

@app.api_route(
    "/poll",
    methods=["GET", "POST"],
    response_class=PlainTextResponse,
    responses={400: {"model": ErrorResponse, "description": "Not an AJAX POST or missing fields"}},
)
async def poll(
    request: Request,
    x_requested_with: Annotated[str | None, Header(alias="X-Requested-With")] = None,
    db: Session = Depends(get_db),
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
) -> PlainTextResponse:
    """
    Client polling endpoint. Drives a session forward and returns its state
    as a single integer:

        0 NOT_BROADCAST, 1 BROADCAST_UNCONFIRMED, 2 CONFIRMING,
        3 CONFIRMED, 4 ERROR

    Body (form or JSON): Body, PhoneTo, Address, Amount
    Headers: X-Requested-With: XMLHttpRequest
    """
    if request.method != "POST" or x_requested_with != "XMLHttpRequest":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bad request")

    try:
        data = await read_form_or_json(request)
        poll_data = PollRequest.model_validate(data)
    except MalformedRequest as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ValidationError as e:
        logger.info(f"Poll validation error: {e.error_count()} error(s)")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bad request")

    if poll_data.amount is not None and poll_data.amount != orchestrator.currency.price:
        logger.info(f"Poll amount {poll_data.amount} differs from price {orchestrator.currency.price}")

    outcome = await run_in_threadpool(
        orchestrator.poll,
        db,
        poll_data.phone_to,
        poll_data.body,
        poll_data.address,
    )

    record_poll_result(outcome.state.name)
    log_webhook_data(
        request=request,
        session_id=outcome.session_id,
        address=poll_data.address,
        result=outcome.state.name,
        dup=outcome.session_id is not None and not outcome.created,
    )
    return PlainTextResponse(str(int(outcome.state)))


# =============================================================================
# Blockchain Webhook Route
# =============================================================================

@app.api_route(
    "/webhook/blockchain/{session_id}",
    methods=["GET", "POST"],
    responses={
        400: {"model": ErrorResponse, "description": "Malformed request or payment not confirmed"},
        404: {"model": ErrorResponse, "description": "Unknown or already sent session"},
        503: {"model": ErrorResponse, "description": "Blockchain provider unavailable"},
    },
)
async def blockchain_webhook(
    session_id: str,
    request: Request,
    x_eventid: Annotated[str | None, Header(alias="X-EventId")] = None,
    x_eventtype: Annotated[str | None, Header(alias="X-EventType")] = None,
    db: Session = Depends(get_db),
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Provider callback fired once the watched address reaches the required
    confirmations. On success the SMS is handed to the carrier and the
    carrier's response is returned.

    Headers:
        - X-EventId, X-EventType: provider event identity
    Body:
        - Transaction JSON with outputs[].addresses[] and confirmations
    """
    source = "blockchain"
    try:
        if request.method != "POST":
            raise MalformedRequest("Bad request")
        try:
            payload = json.loads(await request.body())
        except json.JSONDecodeError as e:
            raise MalformedRequest(f"Invalid JSON: {e}")

        result = await run_in_threadpool(
            orchestrator.handle_blockchain_webhook,
            db,
            session_id,
            x_eventid,
            x_eventtype,
            payload,
        )
    except SmsPayError as e:
        raise reject(request, source, e, session_id=session_id)

    outcome = "already_dispatched" if result.already_dispatched else "dispatched"
    record_webhook_outcome(source, outcome)
    log_webhook_data(request=request, session_id=session_id, result=outcome, dup=result.already_dispatched)
    return JSONResponse(content=result.response)


# =============================================================================
# Carrier Callback Route
# =============================================================================

@app.api_route(
    "/webhook/carrier/{session_id}",
    methods=["GET", "POST"],
    responses={
        400: {"model": ErrorResponse, "description": "Malformed or unsigned request"},
        404: {"model": ErrorResponse, "description": "Unknown or already sent session"},
    },
)
async def carrier_callback(
    session_id: str,
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """
    Carrier delivery status callback. Expected twice per message
    (MessageStatus "sent", then "delivered").

    Form fields: MessageStatus, MessageSid (or SmsSid)
    Headers: X-Twilio-Signature (checked when VALIDATE_CARRIER_SIGNATURE is on)
    """
    source = "carrier"
    try:
        if request.method != "POST":
            raise MalformedRequest("Bad request")
        data = await read_form_or_json(request)

        if settings.VALIDATE_CARRIER_SIGNATURE:
            url = orchestrator.carrier_callback_url(session_id)
            if request.url.query:
                url = f"{url}?{request.url.query}"
            if not x_twilio_signature or not verify_carrier_signature(
                url, data, x_twilio_signature, settings.TWILIO_AUTH_TOKEN
            ):
                raise MalformedRequest("invalid signature")

        try:
            callback = CarrierCallback.model_validate(data)
        except ValidationError:
            raise MalformedRequest("MessageStatus and MessageSid must be strings")
        record = await run_in_threadpool(
            orchestrator.handle_carrier_callback,
            db,
            session_id,
            callback.message_status,
            callback.carrier_message_id,
        )
    except SmsPayError as e:
        raise reject(request, source, e, session_id=session_id)

    record_webhook_outcome(source, "recorded")
    log_webhook_data(request=request, session_id=session_id, result=record.carrier_status)
    return {"status": "ok", "message_status": record.message_status.value}


# =============================================================================
# Session Route
# =============================================================================

@app.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}},
)
def get_session(session_id: str, db: Session = Depends(get_db)) -> SessionResponse:
    """
    Read-only view of one session, including terminal ones. Used to follow
    up sessions that were paid but never sent.
    """
    record = get_payment_message(db, session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session not found")

    return SessionResponse(
        session_id=record.id,
        address=record.address,
        currency=record.currency,
        amount=record.amount,
        recipient_phone=record.recipient_phone,
        payment_status=record.payment_status.value,
        message_status=record.message_status.value,
        carrier_message_id=record.carrier_message_id,
        carrier_status=record.carrier_status,
        subscribed=record.subscription_id is not None,
        dispatch_claimed=record.dispatch_claimed_at is not None,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


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
