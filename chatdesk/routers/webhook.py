import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatdesk.config import settings
from chatdesk.database import get_db
from chatdesk.dependencies import get_gateway
from chatdesk.logging_config import get_logger
from chatdesk.schemas.webhook import WebhookAck
from chatdesk.services.gateway_service import ChannelGateway, verify_signature

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_whatsapp_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    gateway: ChannelGateway = Depends(get_gateway),
):
    challenge = gateway.verify_subscription(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
        raise HTTPException(status_code=403, detail="Verification failed")
    logger.info("Webhook verified")
    return PlainTextResponse(challenge)


@router.post("/whatsapp", response_model=WebhookAck)
async def receive_whatsapp_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
    db: Session = Depends(get_db),
    gateway: ChannelGateway = Depends(get_gateway),
):
    """Store every message of the delivery and acknowledge fast; replies happen on the queue."""
    body = await request.body()

    if settings.whatsapp_app_secret and not verify_signature(body, x_hub_signature_256, settings.whatsapp_app_secret):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    try:
        summary = await run_in_threadpool(gateway.ingest, db, payload)
    except Exception as exc:
        logger.error("Webhook ingestion failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        raise HTTPException(status_code=500, detail="Ingestion failed")

    return WebhookAck(success=True, **summary.to_dict())
