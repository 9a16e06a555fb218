from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.outbox_message import MessageStatus, OutboxMessage, OutboxMessageType
from app.domain.messages import Button, OutboundKind, OutboundMessage
from app.domain.services.outbox_service import OutboxService, _calculate_backoff_seconds


def test_calculate_backoff_seconds_doubles_from_base() -> None:
    base = 30
    max_backoff = 3600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert _calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(-1, base_seconds=base, max_backoff_seconds=max_backoff) == 30


async def _row(db_session, **overrides) -> OutboxMessage:
    fields = dict(
        recipient_phone="919847200001",
        message_type=OutboxMessageType.REPLY.value,
        message_content=OutboundMessage(OutboundKind.TEXT, body="hello").to_content(),
        status=MessageStatus.PENDING,
        retry_count=0,
        max_retries=3,
    )
    fields.update(overrides)
    msg = OutboxMessage(**fields)
    db_session.add(msg)
    await db_session.commit()
    await db_session.refresh(msg)
    return msg


async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session) -> None:
    # retry_count ענק - מוודאים שלא מחשבים 2**retry_count
    msg = await _row(db_session, retry_count=10_000, max_retries=20_000)

    before = utcnow()
    will_retry = await OutboxService(db_session).mark_as_failed(msg, "boom")
    after = utcnow()

    await db_session.refresh(msg)
    assert will_retry
    assert msg.status == MessageStatus.PENDING
    assert msg.next_retry_at is not None

    max_backoff = settings.OUTBOX_MAX_BACKOFF_SECONDS
    lower = before + timedelta(seconds=max_backoff) - timedelta(seconds=2)
    upper = after + timedelta(seconds=max_backoff) + timedelta(seconds=2)
    assert lower <= msg.next_retry_at <= upper


async def test_due_messages_respect_next_retry_at(db_session) -> None:
    now = utcnow()
    due = await _row(db_session)
    later = await _row(db_session, next_retry_at=now + timedelta(minutes=5))
    await _row(db_session, status=MessageStatus.SENT)

    svc = OutboxService(db_session)
    assert [m.id for m in await svc.get_due_messages(now=now)] == [due.id]
    assert {m.id for m in await svc.get_due_messages(now=now + timedelta(minutes=6))} == {due.id, later.id}


async def test_claim_is_exclusive(db_session) -> None:
    msg = await _row(db_session)
    svc = OutboxService(db_session)

    claimed = await svc.claim(msg.id)

    assert claimed is not None
    assert claimed.status == MessageStatus.PROCESSING
    assert await svc.claim(msg.id) is None


async def test_requeue_stuck_processing(db_session) -> None:
    stuck = await _row(db_session, status=MessageStatus.PROCESSING, processed_at=utcnow() - timedelta(minutes=10))
    fresh = await _row(db_session, status=MessageStatus.PROCESSING, processed_at=utcnow())

    assert await OutboxService(db_session).requeue_stuck() == 1

    await db_session.refresh(stuck)
    await db_session.refresh(fresh)
    assert stuck.status == MessageStatus.PENDING
    assert fresh.status == MessageStatus.PROCESSING


async def test_cleanup_keeps_pending_and_recent(db_session) -> None:
    old_sent = await _row(db_session, status=MessageStatus.SENT)
    old_pending = await _row(db_session)
    await _row(db_session, status=MessageStatus.SENT)
    await db_session.execute(
        update(OutboxMessage)
        .where(OutboxMessage.id.in_([old_sent.id, old_pending.id]))
        .values(created_at=utcnow() - timedelta(days=60))
    )
    await db_session.commit()

    assert await OutboxService(db_session).cleanup_old_messages(days=30) == 1


@pytest.mark.parametrize("message_type,expected", [
    (OutboxMessageType.REPLY, False),
    (OutboxMessageType.FISH_ALERT, True),
    (OutboxMessageType.FISH_DIGEST, True),
    (OutboxMessageType.SOLD_OUT_ALTERNATIVES, True),
])
def test_broadcast_types(message_type: OutboxMessageType, expected: bool) -> None:
    assert OutboxMessage(message_type=message_type.value).is_broadcast is expected


async def test_queue_message_stores_content_dict(db_session) -> None:
    message = OutboundMessage(OutboundKind.BUTTONS, body="pick one", buttons=[Button("yes", "Yes"), Button("no", "No")])

    row = await OutboxService(db_session).queue_message("919847200001", message)
    await db_session.commit()
    await db_session.refresh(row)

    assert row.message_content == message.to_content()
    assert row.message_content["body"] == "pick one"
    assert OutboundMessage.from_content(row.message_content) == message
