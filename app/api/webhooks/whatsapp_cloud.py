"""
WhatsApp Cloud API Webhook

GET /webhook answers Meta's verification handshake. POST /webhook always
answers 200 {"status": "ok"}: Meta only needs "received", and anything else
makes it retry and flood us with duplicates. Every entry and every message
has its own error boundary, so one bad message never blocks its siblings.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis_or_none
from app.core.validation import PhoneNumberValidator
from app.db.database import get_db
from app.db.models.message_status_event import MessageStatusEvent
from app.domain.messages import IncomingMessage, MalformedMessageError
from app.domain.services.conversation_service import ConversationService
from app.domain.services.fish.alert_service import FishAlertService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.post_commit import JobPublisher
from app.workers.publisher import get_job_publisher

logger = get_logger(__name__)

router = APIRouter()

ACK = {"status": "ok"}


# ──────────────────────────────────────────────
#  אימות webhook - Meta verification & signature
# ──────────────────────────────────────────────


@router.get(
    "/webhook",
    summary="Cloud API Webhook Verification",
    description="Meta verification handshake - echoes hub.challenge.",
    tags=["Webhooks"],
    response_class=PlainTextResponse,
)
async def cloud_api_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    if not settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN:
        logger.error("Webhook verification requested but no verify token is configured")
        raise HTTPException(status_code=500, detail="Verification not configured")

    if (
        hub_mode == "subscribe"
        and hub_challenge
        and hub_verify_token
        and hmac.compare_digest(hub_verify_token, settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN)
    ):
        logger.info("Cloud API webhook verified successfully")
        return PlainTextResponse(hub_challenge)

    logger.warning("Cloud API webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


def _verify_signature(body: bytes, signature_header: str) -> bool:
    """HMAC-SHA256 of the raw body with the app secret"""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        settings.WHATSAPP_CLOUD_API_APP_SECRET.encode(),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


# ──────────────────────────────────────────────
#  Messages & statuses
# ──────────────────────────────────────────────


async def _process_message(
    conversations: ConversationService,
    raw: dict[str, Any],
    contacts: list[dict],
) -> None:
    try:
        message = IncomingMessage.from_cloud_api(raw, contacts)
    except MalformedMessageError:
        logger.warning("Dropping malformed webhook message", extra_data={"keys": sorted(raw)})
        return

    redis = await get_redis_or_none()
    outcome = await conversations.ingest(message, redis)
    logger.info(
        "Webhook message handled",
        extra_data={
            "message_id": message.message_id,
            "phone": PhoneNumberValidator.mask(message.sender),
            "type": message.type.value,
            "outcome": outcome.value,
        }
    )


async def _process_status(db: AsyncSession, status: dict[str, Any]) -> None:
    """Delivery receipt: update the outbox row and the alerts it carried"""
    provider_message_id = status.get("id")
    state = status.get("status")
    if not provider_message_id or not state:
        return

    errors = status.get("errors") or [{}]
    error_code = errors[0].get("code")
    error_title = errors[0].get("title") or errors[0].get("message")

    if state == "failed":
        db.add(MessageStatusEvent(
            provider_message_id=provider_message_id,
            recipient_phone=status.get("recipient_id"),
            status=state,
            error_code=str(error_code) if error_code is not None else None,
            error_title=error_title,
        ))
        logger.warning(
            "Provider reported delivery failure",
            extra_data={
                "provider_message_id": provider_message_id,
                "recipient": PhoneNumberValidator.mask(status.get("recipient_id") or ""),
                "error_code": error_code,
                "error_title": error_title,
            }
        )

    outbox_row = await OutboxService(db).find_by_provider_message_id(provider_message_id)
    if outbox_row is not None:
        await FishAlertService(db, None).apply_delivery_status(outbox_row.id, state, error_title)
    await db.commit()


@router.post(
    "/webhook",
    summary="Cloud API Webhook",
    description="Messages and delivery statuses from the WhatsApp Cloud API. Always acknowledged.",
    responses={200: {"description": "Received"}},
    tags=["Webhooks"],
)
async def cloud_api_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    publisher: JobPublisher = Depends(get_job_publisher),
) -> dict:
    try:
        body = await request.body()
    except Exception as e:
        logger.error("Failed to read webhook body", extra_data={"error": str(e)})
        return ACK

    if settings.WHATSAPP_CLOUD_API_APP_SECRET:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not _verify_signature(body, signature):
            logger.warning("Cloud API webhook: invalid signature, payload ignored")
            return ACK

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Cloud API webhook: body is not JSON", extra_data={"size": len(body)})
        return ACK
    if not isinstance(payload, dict):
        return ACK

    conversations = ConversationService(db, publisher)

    # Cloud API payload: entry[] → changes[] → value.messages[] / value.statuses[]
    entries = payload.get("entry") if isinstance(payload.get("entry"), list) else []
    for entry in entries:
        try:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                contacts = value.get("contacts") or []

                for raw in value.get("messages") or []:
                    try:
                        await _process_message(conversations, raw, contacts)
                    except Exception as e:
                        await db.rollback()
                        logger.error(
                            "Webhook message failed",
                            extra_data={"message_id": raw.get("id") if isinstance(raw, dict) else None, "error": str(e)},
                            exc_info=True,
                        )

                for status in value.get("statuses") or []:
                    try:
                        await _process_status(db, status)
                    except Exception as e:
                        await db.rollback()
                        logger.error(
                            "Webhook status failed",
                            extra_data={"status_id": status.get("id") if isinstance(status, dict) else None, "error": str(e)},
                            exc_info=True,
                        )
        except Exception as e:
            await db.rollback()
            logger.error("Webhook entry failed", extra_data={"error": str(e)}, exc_info=True)

    return ACK
