"""
PyWa Provider - מימוש BaseWhatsAppProvider מעל Cloud API (Meta).

משתמש בספריית pywa. כל קריאה עוברת דרך circuit breaker; ניסיונות חוזרים
מנוהלים ע"י ה-outbox ולא כאן, כך שכל קריאה ל-API נספרת במגבילי הקצב.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import AppException, WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.messages import Button, ListSection
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


class PyWaProvider(BaseWhatsAppProvider):
    """ספק WhatsApp מעל Cloud API באמצעות pywa_async"""

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker

        # אתחול עצלן - נטען רק כשנדרש, מונע import errors בבדיקות
        self._client = None

    def _get_client(self):
        """אתחול עצלן של pywa client."""
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=settings.WHATSAPP_CLOUD_API_PHONE_ID,
                token=settings.WHATSAPP_CLOUD_API_TOKEN,
            )
        return self._client

    @property
    def provider_name(self) -> str:
        return "pywa"

    def normalize_phone(self, phone: str) -> str:
        """Cloud API רוצה 919812345678 ולא +919812345678"""
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone)
        return phone

    @staticmethod
    def _message_id(sent: Any) -> Optional[str]:
        # גרסאות pywa מחזירות SentMessage (עם id) או מחרוזת
        if sent is None:
            return None
        return str(getattr(sent, "id", sent))

    async def _call(
        self,
        operation: str,
        to: str,
        func: Callable[[], Awaitable[Any]],
    ) -> Optional[str]:
        phone_masked = PhoneNumberValidator.mask(to)
        try:
            sent = await self._circuit_breaker.execute(func)
        except AppException:
            raise
        except Exception as exc:
            logger.warning(
                f"Cloud API {operation} failed",
                extra_data={"phone": phone_masked, "error": str(exc)},
            )
            raise WhatsAppError(
                message=f"Cloud API {operation} failed",
                details={"phone": phone_masked, "error": str(exc)},
            ) from exc
        return self._message_id(sent)

    # ── שליחת הודעות ──

    async def send_text(self, to: str, text: str) -> Optional[str]:
        to = self.normalize_phone(to)
        client = self._get_client()

        async def _send():
            return await client.send_message(to=to, text=text)

        return await self._call("send_text", to, _send)

    async def send_buttons(
        self,
        to: str,
        text: str,
        buttons: list[Button],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        from pywa import types as pywa_types

        to = self.normalize_phone(to)
        client = self._get_client()
        pywa_buttons = [
            pywa_types.Button(title=button.title, callback_data=button.id)
            for button in buttons
        ]

        async def _send():
            return await client.send_message(
                to=to, text=text, header=header, footer=footer, buttons=pywa_buttons
            )

        return await self._call("send_buttons", to, _send)

    async def send_list(
        self,
        to: str,
        text: str,
        button_title: str,
        sections: list[ListSection],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        from pywa import types as pywa_types

        to = self.normalize_phone(to)
        client = self._get_client()
        section_list = pywa_types.SectionList(
            button_title=button_title[:20],
            sections=[
                pywa_types.Section(
                    title=section.title[:24],
                    rows=[
                        pywa_types.SectionRow(
                            title=row.title,
                            callback_data=row.id,
                            description=row.description,
                        )
                        for row in section.rows
                    ],
                )
                for section in sections
            ],
        )

        async def _send():
            return await client.send_message(
                to=to, text=text, header=header, footer=footer, buttons=section_list
            )

        return await self._call("send_list", to, _send)

    async def send_location(
        self,
        to: str,
        latitude: float,
        longitude: float,
        name: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[str]:
        to = self.normalize_phone(to)
        client = self._get_client()

        async def _send():
            return await client.send_location(
                to=to, latitude=latitude, longitude=longitude, name=name, address=address
            )

        return await self._call("send_location", to, _send)

    async def send_media(
        self,
        to: str,
        media: str,
        media_type: str = "image",
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[str]:
        if not media:
            raise WhatsAppError(
                message="No media supplied",
                details={"phone": PhoneNumberValidator.mask(to)},
            )

        to = self.normalize_phone(to)
        client = self._get_client()

        async def _send():
            if media_type == "document":
                return await client.send_document(
                    to=to, document=media, filename=filename, caption=caption
                )
            return await client.send_image(to=to, image=media, caption=caption)

        return await self._call("send_media", to, _send)

    async def request_location(self, to: str, text: str) -> Optional[str]:
        to = self.normalize_phone(to)
        client = self._get_client()

        async def _send():
            return await client.request_location(to=to, text=text)

        return await self._call("request_location", to, _send)
