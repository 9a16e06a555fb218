"""
Messenger - how handlers and services "send" a message.

Nothing is sent here: each call writes an outbox row in the current
transaction and records a post-commit delivery job.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.outbox_message import OutboxMessage, OutboxMessageType
from app.domain.messages import Button, ListRow, ListSection, OutboundKind, OutboundMessage
from app.domain.services.outbox_service import OutboxService
from app.domain.services.post_commit import PostCommitJobs


class OutboxMessenger:
    def __init__(self, db: AsyncSession, jobs: PostCommitJobs):
        self.db = db
        self.jobs = jobs
        self.outbox = OutboxService(db)

    async def send(
        self,
        to: str,
        message: OutboundMessage,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        row = await self.outbox.queue_message(to, message, message_type)
        self.jobs.send_outbox(row.id)
        return row

    async def send_text(
        self,
        to: str,
        text: str,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        return await self.send(to, OutboundMessage(OutboundKind.TEXT, body=text), message_type)

    async def send_buttons(
        self,
        to: str,
        text: str,
        buttons: Iterable[tuple[str, str]],
        header: str | None = None,
        footer: str | None = None,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        """`buttons` are (id, title) pairs, at most three"""
        message = OutboundMessage(
            OutboundKind.BUTTONS,
            body=text,
            header=header,
            footer=footer,
            buttons=[Button(id=button_id, title=title) for button_id, title in buttons],
        )
        return await self.send(to, message, message_type)

    async def send_list(
        self,
        to: str,
        text: str,
        button_title: str,
        rows: Iterable[tuple[str, str, str | None]],
        section_title: str = "Options",
        header: str | None = None,
        footer: str | None = None,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        """`rows` are (id, title, description) triples, at most ten"""
        message = OutboundMessage(
            OutboundKind.LIST,
            body=text,
            header=header,
            footer=footer,
            list_button=button_title,
            sections=[
                ListSection(
                    title=section_title,
                    rows=[ListRow(id=row_id, title=title, description=desc) for row_id, title, desc in rows],
                )
            ],
        )
        return await self.send(to, message, message_type)

    async def send_location(
        self,
        to: str,
        latitude: float,
        longitude: float,
        name: str | None = None,
        address: str | None = None,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        message = OutboundMessage(
            OutboundKind.LOCATION,
            latitude=latitude,
            longitude=longitude,
            name=name,
            address=address,
        )
        return await self.send(to, message, message_type)

    async def send_image(
        self,
        to: str,
        media_id: str,
        caption: str = "",
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        message = OutboundMessage(OutboundKind.IMAGE, body=caption, media_id=media_id)
        return await self.send(to, message, message_type)

    async def request_location(self, to: str, text: str) -> OutboxMessage:
        return await self.send(to, OutboundMessage(OutboundKind.REQUEST_LOCATION, body=text))
