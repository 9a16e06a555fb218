"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- בוני payload ל-WhatsApp Cloud API (entry → changes → value.messages)
- פונקציית שליחה תמציתית ל-webhook
- ספק WhatsApp מזויף שרושם שליחות
- הרצת משימות התראה (Celery) מול ה-session של הבדיקה
- פונקציות אימות DB (outbox, התראות, dedup)
"""
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional
from unittest.mock import patch

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.fish_alert import FishAlert
from app.db.models.outbox_message import OutboxMessage
from app.db.models.processed_webhook import ProcessedWebhook
from app.domain.messages import OutboundMessage


# ============================================================================
# בוני Payload - WhatsApp Cloud API
# ============================================================================


def _message_id() -> str:
    return f"wamid.{uuid.uuid4().hex}"


def build_wa_text(phone: str, text: str, *, message_id: Optional[str] = None) -> dict:
    """הודעת טקסט"""
    return {
        "from": phone,
        "id": message_id or _message_id(),
        "timestamp": "1700000000",
        "type": "text",
        "text": {"body": text},
    }


def build_wa_button(phone: str, button_id: str, *, title: str = "", message_id: Optional[str] = None) -> dict:
    """לחיצה על כפתור reply"""
    return {
        "from": phone,
        "id": message_id or _message_id(),
        "timestamp": "1700000000",
        "type": "interactive",
        "interactive": {
            "type": "button_reply",
            "button_reply": {"id": button_id, "title": title or button_id},
        },
    }


def build_wa_list_reply(phone: str, row_id: str, *, title: str = "", message_id: Optional[str] = None) -> dict:
    """בחירת שורה מרשימה"""
    return {
        "from": phone,
        "id": message_id or _message_id(),
        "timestamp": "1700000000",
        "type": "interactive",
        "interactive": {
            "type": "list_reply",
            "list_reply": {"id": row_id, "title": title or row_id},
        },
    }


def build_wa_location(
    phone: str,
    latitude: float,
    longitude: float,
    *,
    name: str = "Test spot",
    message_id: Optional[str] = None,
) -> dict:
    """שיתוף מיקום"""
    return {
        "from": phone,
        "id": message_id or _message_id(),
        "timestamp": "1700000000",
        "type": "location",
        "location": {"latitude": latitude, "longitude": longitude, "name": name},
    }


def build_wa_status(provider_message_id: str, status: str, recipient: str, *, error_title: str = "") -> dict:
    """דיווח סטטוס מסירה"""
    payload: dict[str, Any] = {
        "id": provider_message_id,
        "status": status,
        "recipient_id": recipient,
        "timestamp": "1700000000",
    }
    if error_title:
        payload["errors"] = [{"code": 131026, "title": error_title}]
    return payload


def build_wa_payload(*messages: dict, statuses: Optional[list[dict]] = None, name: str = "Tester") -> dict:
    """עטיפה במבנה webhook מלא"""
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550000000", "phone_number_id": "PHONE_ID"},
        "contacts": [{"wa_id": m["from"], "profile": {"name": name}} for m in messages],
        "messages": list(messages),
    }
    if statuses:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


# ============================================================================
# פונקציות שליחה
# ============================================================================

WEBHOOK_URL = "/api/whatsapp-cloud/webhook"


async def send_wa(client, *messages: dict, statuses: Optional[list[dict]] = None) -> dict:
    """POST ל-webhook ובדיקה שתמיד חוזר 200"""
    response = await client.post(WEBHOOK_URL, json=build_wa_payload(*messages, statuses=statuses))
    assert response.status_code == 200
    return response.json()


# ============================================================================
# ספק WhatsApp מזויף
# ============================================================================


class RecordingProvider:
    """מחליף את ספק ה-Cloud API - רושם כל שליחה ומחזיר wamid"""

    provider_name = "recording"

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.error = error

    async def send(self, to: str, message: OutboundMessage) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append((to, message))
        return f"wamid.sent-{len(self.sent)}"

    def to(self, phone: str) -> list[OutboundMessage]:
        return [message for recipient, message in self.sent if recipient == phone]


# ============================================================================
# משימות Celery מול session הבדיקה
# ============================================================================


def task_session_patch(db_session: AsyncSession):
    """get_task_session של המשימות מחזיר את ה-session של הבדיקה"""

    @asynccontextmanager
    async def _session():
        yield db_session

    return patch("app.workers.tasks.get_task_session", _session)


def publisher_patch(publisher):
    return patch("app.workers.tasks.get_job_publisher", lambda: publisher)


# ============================================================================
# פונקציות אימות DB
# ============================================================================


async def outbox_for(db_session: AsyncSession, phone: str, message_type: Optional[str] = None) -> list[OutboxMessage]:
    """הודעות outbox לנמען, לפי סדר יצירה"""
    query = select(OutboxMessage).where(OutboxMessage.recipient_phone == phone)
    if message_type is not None:
        query = query.where(OutboxMessage.message_type == message_type)
    result = await db_session.execute(
        query.order_by(OutboxMessage.id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def assert_outbox_count(db_session: AsyncSession, phone: str, expected: int, message_type: Optional[str] = None) -> None:
    rows = await outbox_for(db_session, phone, message_type)
    assert len(rows) == expected, f"expected {expected} outbox rows for {phone}, got {len(rows)}"


async def alerts_for_catch(db_session: AsyncSession, catch_id: int) -> list[FishAlert]:
    result = await db_session.execute(
        select(FishAlert)
        .where(FishAlert.catch_id == catch_id)
        .order_by(FishAlert.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_processed_webhooks(db_session: AsyncSession, message_id: Optional[str] = None) -> int:
    query = select(func.count()).select_from(ProcessedWebhook)
    if message_id is not None:
        query = query.where(ProcessedWebhook.message_id == message_id)
    return (await db_session.execute(query)).scalar_one()
