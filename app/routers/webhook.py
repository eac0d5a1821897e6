"""Meta webhook ingress (WhatsApp Cloud API, Instagram Messaging)."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import (
    PARSERS,
    InstagramTextEvent,
    WebhookEventResult,
    WebhookResponse,
    WhatsAppTextEvent,
)
from app.services.orchestrator import handle_inbound_event

logger = get_logger("webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _handle_delivery(provider: str, payload: Any, db: Session) -> WebhookResponse:
    results = []
    for event in PARSERS[provider](payload):
        if not isinstance(event, (WhatsAppTextEvent, InstagramTextEvent)):
            if event.kind == "unrecognized":
                logger.warning(
                    "Unrecognized webhook payload",
                    extra={"context": {"provider": provider, "reason": event.reason}},
                )
            results.append(WebhookEventResult(kind=event.kind, outcome="ignored"))
            continue

        try:
            outcome = handle_inbound_event(db, event.to_inbound_event())
        except Exception as e:
            logger.error(
                "Webhook processing failed",
                extra={"context": {"provider": provider, "provider_message_id": event.provider_message_id}},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Inbound event processing failed",
            ) from e

        results.append(
            WebhookEventResult(
                kind=event.kind,
                provider_message_id=event.provider_message_id,
                outcome=outcome.stage.value,
                duplicate=outcome.duplicate,
                conversation_id=outcome.conversation_id,
                job_id=outcome.job_id,
            )
        )
    return WebhookResponse(ok=True, results=results)


@router.post("/whatsapp", response_model=WebhookResponse)
def whatsapp_webhook(payload: Any = Body(...), db: Session = Depends(get_db)):
    return _handle_delivery("whatsapp", payload, db)


@router.post("/instagram", response_model=WebhookResponse)
def instagram_webhook(payload: Any = Body(...), db: Session = Depends(get_db)):
    return _handle_delivery("instagram", payload, db)


@router.get("/{provider}", response_class=PlainTextResponse)
def verify_subscription(
    provider: str,
    mode: str = Query(default="", alias="hub.mode"),
    verify_token: str = Query(default="", alias="hub.verify_token"),
    challenge: str = Query(default="", alias="hub.challenge"),
):
    """Meta subscription handshake: echo ``hub.challenge`` when the token matches."""
    if provider not in PARSERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
    if mode != "subscribe" or not settings.meta_verify_token or verify_token != settings.meta_verify_token:
        logger.warning("Webhook verification rejected", extra={"context": {"provider": provider, "mode": mode}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return challenge
