"""DeskPilot – Webhook Router.

Inbound platform webhooks. Routes only verify and enqueue; all processing
happens in the job pipeline, so a platform always gets a quick answer:

  - GET  subscription handshake: 200 + raw challenge, or 403 with an empty body
  - POST bad signature → 403, nothing enqueued
  - POST body that is not JSON (or, for the widget, not a valid message)
    → 200 {"status": "ignored"} (a redelivery cannot fix it)
  - POST queue unavailable → 500 so the platform redelivers later
"""

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from app.core.models import Channel
from app.gateway.dependencies import get_pipeline
from app.pipeline.context import PipelineContext
from app.pipeline.intake import enqueue_ingest

logger = structlog.get_logger()
router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "X-Hub-Signature-256"


class WebsiteMessageIn(BaseModel):
    customerId: str = Field(..., min_length=1)
    text: str = ""
    customerName: str | None = None
    timestamp: str | int | float | None = None
    messageId: str | None = None


# --- Helper Functions (Private) ---


def _subscription_response(
    ctx: PipelineContext,
    channel: Channel,
    mode: str | None,
    token: str | None,
    challenge: str | None,
) -> Response:
    echoed = ctx.adapter_for(channel).verify_subscription(mode, token, challenge)
    if echoed is None:
        return Response(status_code=403)
    return PlainTextResponse(echoed, status_code=200)


async def _enqueue(ctx: PipelineContext, channel: Channel, payload: Any) -> dict[str, Any]:
    try:
        job_ids = await enqueue_ingest(ctx, channel, payload)
    except Exception as exc:
        logger.error("webhook.enqueue_failed", channel=channel.value, error=str(exc), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to queue inbound message") from exc
    return {"status": "queued" if job_ids else "ignored", "jobs": len(job_ids)}


async def _receive_meta_webhook(request: Request, ctx: PipelineContext, channel: Channel) -> dict[str, Any]:
    raw_body = await request.body()
    if not ctx.adapter_for(channel).verify_inbound(raw_body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("webhook.forbidden", channel=channel.value, reason="invalid_signature")
        raise HTTPException(status_code=403, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("webhook.malformed_body", channel=channel.value, size=len(raw_body))
        return {"status": "ignored", "jobs": 0}

    return await _enqueue(ctx, channel, payload)


# --- WhatsApp ---


@router.get("/webhook/whatsapp")
async def whatsapp_verify(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    ctx: PipelineContext = Depends(get_pipeline),
) -> Response:
    """WhatsApp webhook subscription handshake."""
    return _subscription_response(ctx, Channel.WHATSAPP, hub_mode, hub_verify_token, hub_challenge)


@router.post("/webhook/whatsapp")
async def whatsapp_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline)) -> dict[str, Any]:
    return await _receive_meta_webhook(request, ctx, Channel.WHATSAPP)


# --- Instagram ---


@router.get("/webhook/instagram")
async def instagram_verify(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    ctx: PipelineContext = Depends(get_pipeline),
) -> Response:
    """Instagram webhook subscription handshake."""
    return _subscription_response(ctx, Channel.INSTAGRAM, hub_mode, hub_verify_token, hub_challenge)


@router.post("/webhook/instagram")
async def instagram_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline)) -> dict[str, Any]:
    return await _receive_meta_webhook(request, ctx, Channel.INSTAGRAM)


# --- Website widget ---


@router.post("/webhook/website")
async def website_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline)) -> dict[str, Any]:
    """Widget message. Bodies that are not a valid message are ignored like any other webhook."""
    raw_body = await request.body()
    try:
        body = WebsiteMessageIn.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning(
            "webhook.malformed_body",
            channel=Channel.WEBSITE.value,
            size=len(raw_body),
            errors=exc.error_count(),
        )
        return {"status": "ignored", "jobs": 0}
    return await _enqueue(ctx, Channel.WEBSITE, body.model_dump())


@router.get("/webhook/health")
async def webhook_health(ctx: PipelineContext = Depends(get_pipeline)) -> dict[str, Any]:
    return {
        "status": "ok",
        "job_backend": ctx.queue.backend,
        "channels": {channel.value: adapter.describe() for channel, adapter in ctx.adapters.items()},
    }
