"""
Canonical message types.

IncomingMessage is what the router sees, independent of the webhook format.
OutboundMessage is a send intent; it is stored as JSON in the outbox and
turned into a provider call by the delivery worker.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import ValidationException

# מגבלות WhatsApp Cloud API
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_BODY = 4096


class MessageType(str, enum.Enum):
    TEXT = "text"
    BUTTON = "button"
    LIST = "list"
    LOCATION = "location"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    UNKNOWN = "unknown"


MEDIA_TYPES = frozenset({MessageType.IMAGE, MessageType.DOCUMENT, MessageType.AUDIO, MessageType.VIDEO})


class MalformedMessageError(ValidationException):
    """Raised when a webhook message lacks the fields needed to route it"""


@dataclass
class IncomingMessage:
    message_id: str
    sender: str
    type: MessageType
    timestamp: datetime
    text: str | None = None
    selection_id: str | None = None
    selection_title: str | None = None
    media_id: str | None = None
    media_mime_type: str | None = None
    caption: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    contact_name: str | None = None

    @classmethod
    def from_cloud_api(cls, msg: dict, contacts: list[dict] | None = None) -> "IncomingMessage":
        """
        Build from one entry of `value.messages[]`.

        Raises:
            MalformedMessageError: id or sender missing
        """
        message_id = msg.get("id")
        sender = msg.get("from")
        if not message_id or not sender:
            raise MalformedMessageError("Webhook message without id or sender")

        raw_type = msg.get("type", "")
        try:
            timestamp = datetime.fromtimestamp(int(msg.get("timestamp")), tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError, OverflowError):
            timestamp = datetime.now(timezone.utc).replace(tzinfo=None)

        contact_name = None
        for contact in contacts or []:
            if contact.get("wa_id") == sender:
                contact_name = (contact.get("profile") or {}).get("name")
                break

        message = cls(
            message_id=str(message_id),
            sender=str(sender),
            type=MessageType.UNKNOWN,
            timestamp=timestamp,
            contact_name=contact_name,
        )

        if raw_type == "text":
            message.type = MessageType.TEXT
            message.text = (msg.get("text") or {}).get("body", "")

        elif raw_type == "interactive":
            interactive = msg.get("interactive") or {}
            interactive_type = interactive.get("type", "")
            if interactive_type == "button_reply":
                reply = interactive.get("button_reply") or {}
                message.type = MessageType.BUTTON
                message.selection_id = reply.get("id")
                message.selection_title = reply.get("title")
            elif interactive_type == "list_reply":
                reply = interactive.get("list_reply") or {}
                message.type = MessageType.LIST
                message.selection_id = reply.get("id")
                message.selection_title = reply.get("title")

        elif raw_type == "button":
            # כפתור template (quick reply) - payload הוא המזהה
            button = msg.get("button") or {}
            message.type = MessageType.BUTTON
            message.selection_id = button.get("payload") or button.get("text")
            message.selection_title = button.get("text")

        elif raw_type == "location":
            location = msg.get("location") or {}
            try:
                message.latitude = float(location["latitude"])
                message.longitude = float(location["longitude"])
            except (KeyError, TypeError, ValueError):
                message.type = MessageType.UNKNOWN
            else:
                message.type = MessageType.LOCATION
                message.location_name = location.get("name") or location.get("address")

        elif raw_type in ("image", "document", "audio", "video"):
            media = msg.get(raw_type) or {}
            message.type = MessageType(raw_type)
            message.media_id = media.get("id")
            message.media_mime_type = media.get("mime_type")
            message.caption = media.get("caption")

        return message

    @property
    def is_media(self) -> bool:
        return self.type in MEDIA_TYPES

    @property
    def is_interactive(self) -> bool:
        return self.type in (MessageType.BUTTON, MessageType.LIST)

    @property
    def is_location(self) -> bool:
        return self.type == MessageType.LOCATION

    @property
    def token(self) -> str:
        """Selection id for interactive replies, otherwise normalized text"""
        if self.selection_id:
            return self.selection_id.strip().lower()
        return (self.text or "").strip().lower()

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form for the worker queue"""
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["timestamp"] = self.timestamp.isoformat()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IncomingMessage":
        data = dict(payload)
        data["type"] = MessageType(data["type"])
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


# ──────────────────────────────────────────────
#  Outbound intents
# ──────────────────────────────────────────────


class OutboundKind(str, enum.Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"
    LOCATION = "location"
    IMAGE = "image"
    DOCUMENT = "document"
    REQUEST_LOCATION = "request_location"


@dataclass
class Button:
    id: str
    title: str

    def __post_init__(self) -> None:
        self.title = self.title[:MAX_BUTTON_TITLE]


@dataclass
class ListRow:
    id: str
    title: str
    description: str | None = None

    def __post_init__(self) -> None:
        self.title = self.title[:MAX_ROW_TITLE]
        if self.description:
            self.description = self.description[:MAX_ROW_DESCRIPTION]


@dataclass
class ListSection:
    title: str
    rows: list[ListRow] = field(default_factory=list)


@dataclass
class OutboundMessage:
    kind: OutboundKind
    body: str = ""
    header: str | None = None
    footer: str | None = None
    buttons: list[Button] = field(default_factory=list)
    sections: list[ListSection] = field(default_factory=list)
    list_button: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None
    media_id: str | None = None
    media_url: str | None = None
    filename: str | None = None

    def __post_init__(self) -> None:
        self.body = (self.body or "")[:MAX_BODY]
        if len(self.buttons) > MAX_BUTTONS:
            raise ValueError(f"WhatsApp allows at most {MAX_BUTTONS} reply buttons")
        if sum(len(section.rows) for section in self.sections) > MAX_LIST_ROWS:
            raise ValueError(f"WhatsApp allows at most {MAX_LIST_ROWS} list rows")

    def to_content(self) -> dict[str, Any]:
        content = asdict(self)
        content["kind"] = self.kind.value
        return {key: value for key, value in content.items() if value not in (None, [], "")}

    @classmethod
    def from_content(cls, content: dict[str, Any]) -> "OutboundMessage":
        data = dict(content)
        data["kind"] = OutboundKind(data["kind"])
        data["buttons"] = [Button(**b) for b in data.get("buttons", [])]
        data["sections"] = [
            ListSection(title=s["title"], rows=[ListRow(**r) for r in s.get("rows", [])])
            for s in data.get("sections", [])
        ]
        return cls(**data)
