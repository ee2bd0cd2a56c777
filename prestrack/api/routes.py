"""FastAPI route definitions for the Prestrack agent API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from prestrack.api.schemas import HealthResponse, InboundMessage, WebhookResponse
from prestrack.errors import InvalidIdentity
from prestrack.identity import to_e164
from prestrack.models import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter()

RETRY_MESSAGE = "Please try again in a moment."


def _get_runtime(request: Request):
    """Retrieve the runtime built during the FastAPI lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return runtime


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health_check(http_request: Request):
    """Health check endpoint."""
    runtime = getattr(http_request.app.state, "runtime", None)
    if runtime is None:
        return HealthResponse()
    version = await asyncio.to_thread(lambda: runtime.store.schema_version)
    return HealthResponse(schema_version=version, sweeper_running=runtime.sweeper.running)


@router.post(
    "/webhooks/whatsapp", response_model=WebhookResponse, response_model_exclude_none=True,
)
async def whatsapp_webhook(http_request: Request):
    """Receive one message from the WhatsApp gateway and answer it.

    The gateway is always acknowledged with 200: malformed chat ids are
    ignored, and any failure inside the core becomes a polite retry
    message instead of an error the gateway would redeliver.
    """
    runtime = _get_runtime(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        body = await http_request.json()
    except ValueError:
        body = {}
    inbound = InboundMessage.from_payload(body if isinstance(body, dict) else {})

    try:
        phone = to_e164(inbound.chat_id)
    except InvalidIdentity:
        logger.info("[%s] Ignoring webhook with invalid chat id %r", request_id, inbound.chat_id)
        return WebhookResponse(status="ignored_invalid_chatId")

    if not inbound.text and inbound.media is None:
        logger.info("[%s] Ignoring empty message from %s", request_id, phone)
        return WebhookResponse(status="ignored_empty")

    ctx = RequestContext(
        phone=phone,
        text=inbound.text,
        media=inbound.media,
        request_id=request_id,
        rag_session_key=phone,
    )
    try:
        reply = await runtime.handle_message(ctx)
    except Exception:
        # Full traceback stays server-side; the sender only sees a retry hint
        logger.exception("[%s] Error handling message from %s", request_id, phone)
        return WebhookResponse(status="ok", answer=RETRY_MESSAGE)

    return WebhookResponse(status="ok", answer=reply.text)
