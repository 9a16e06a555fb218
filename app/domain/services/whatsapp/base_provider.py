"""
ממשק בסיסי לספק WhatsApp - Dependency Inversion.

שכבת השליחה תלויה רק בממשק ולא במימוש ספציפי. כל שיטת שליחה מחזירה
את מזהה ההודעה שהספק הקצה (wamid), כדי לקשר דיווחי סטטוס לשורת ה-outbox.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from app.core.exceptions import WhatsAppError
from app.domain.messages import Button, ListSection, OutboundKind, OutboundMessage


class BaseWhatsAppProvider(ABC):
    """
    ממשק אחיד לשליחת הודעות WhatsApp.

    כל מימוש אחראי על:
    - קריאת ה-SDK / HTTP
    - circuit breaker
    - נרמול טלפון לפורמט הנדרש ע"י הספק
    """

    async def send(self, to: str, message: OutboundMessage) -> Optional[str]:
        """
        שליחת OutboundMessage לפי סוגו.

        Raises:
            WhatsAppError: בכשלון שליחה או תוכן שלא ניתן לשלוח.
        """
        if message.kind == OutboundKind.TEXT:
            return await self.send_text(to, message.body)
        if message.kind == OutboundKind.BUTTONS:
            return await self.send_buttons(
                to, message.body, message.buttons, header=message.header, footer=message.footer
            )
        if message.kind == OutboundKind.LIST:
            return await self.send_list(
                to,
                message.body,
                message.list_button or "Options",
                message.sections,
                header=message.header,
                footer=message.footer,
            )
        if message.kind == OutboundKind.LOCATION:
            if message.latitude is None or message.longitude is None:
                raise WhatsAppError("Location message without coordinates")
            return await self.send_location(
                to, message.latitude, message.longitude, name=message.name, address=message.address
            )
        if message.kind in (OutboundKind.IMAGE, OutboundKind.DOCUMENT):
            media = message.media_id or message.media_url
            if not media:
                raise WhatsAppError("Media message without media id or url")
            return await self.send_media(
                to,
                media,
                media_type=message.kind.value,
                caption=message.body or None,
                filename=message.filename,
            )
        if message.kind == OutboundKind.REQUEST_LOCATION:
            return await self.request_location(to, message.body)
        raise WhatsAppError(f"Unsupported outbound kind: {message.kind}")

    # ── שליחת הודעות ──

    @abstractmethod
    async def send_text(self, to: str, text: str) -> Optional[str]:
        """
        שליחת הודעת טקסט.

        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    async def send_buttons(
        self,
        to: str,
        text: str,
        buttons: list[Button],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        """שליחת הודעה עם עד 3 כפתורי reply."""

    @abstractmethod
    async def send_list(
        self,
        to: str,
        text: str,
        button_title: str,
        sections: list[ListSection],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        """שליחת רשימת בחירה (עד 10 שורות)."""

    @abstractmethod
    async def send_location(
        self,
        to: str,
        latitude: float,
        longitude: float,
        name: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[str]:
        """שליחת נקודת מיקום."""

    @abstractmethod
    async def send_media(
        self,
        to: str,
        media: str,
        media_type: str = "image",
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[str]:
        """
        שליחת מדיה (תמונה/מסמך).

        Args:
            media: מזהה מדיה של הספק או URL ציבורי.
        """

    @abstractmethod
    async def request_location(self, to: str, text: str) -> Optional[str]:
        """בקשת שיתוף מיקום מהמשתמש (כפתור "Send location")."""

    # ── נרמול טלפון ──

    @abstractmethod
    def normalize_phone(self, phone: str) -> str:
        """נרמול מספר טלפון לפורמט הנדרש ע"י הספק."""

    # ── זיהוי ספק ──

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""
