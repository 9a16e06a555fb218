"""
תרחיש 3 - דגה אזלה אחרי ששלושה לקוחות אמרו "אני בדרך"

מכסה:
- שלושה מנויים מקבלים התראה ולוחצים "I'm coming" דרך ה-webhook
- המוכר מסמן SOLD_OUT → job של sold out אחרי commit
- כל מגיב מקבל הודעת רשימה אחת עם שתי החלופות, הקרובה ראשונה
- סה"כ בדיוק 3 הודעות חלופות, והרצה חוזרת לא שולחת שוב
"""
import pytest
from sqlalchemy import func, select

from app.db.models.fish_catch import FishCatchStatus
from app.db.models.fish_catch_response import FishCatchResponse
from app.db.models.outbox_message import OutboxMessage, OutboxMessageType
from app.domain.messages import OutboundKind, OutboundMessage
from app.domain.services.fish.catch_service import FishCatchService
from app.domain.services.post_commit import PostCommitJobs
from app.workers import tasks

from tests.scenarios.conftest import (
    alerts_for_catch,
    build_wa_button,
    outbox_for,
    publisher_patch,
    send_wa,
    task_session_patch,
)


async def _run_batch(db_session, publisher, catch_id: int, action) -> dict:
    with task_session_patch(db_session), publisher_patch(publisher):
        return await tasks._run_alert_batch(catch_id, action)


@pytest.mark.scenario
class TestSoldOutAlternatives:
    """sold out → חלופות לכל מי שהיה בדרך"""

    async def test_three_responders_get_nearest_alternatives(
        self, db_session, test_client, publisher, user_factory, seller_factory,
        fish_type_factory, catch_factory, subscription_factory,
    ) -> None:
        sardine = await fish_type_factory()
        buyers = [await user_factory(name=name) for name in ("Asha", "Ravi", "Meera")]
        for buyer in buyers:
            await subscription_factory(buyer, latitude=9.93, longitude=76.26, radius_km=5)

        # שתי חלופות מאותו סוג, 1.1 ו-3.3 ק"מ מהמנויים
        near = await catch_factory(await seller_factory(9.94, 76.26, "Vypin Catch"), sardine)
        farther = await catch_factory(await seller_factory(9.96, 76.26, "Marine Drive Fish"), sardine)

        catch = await catch_factory(await seller_factory(9.95, 76.27), sardine)
        result = await _run_batch(db_session, publisher, catch.id, lambda s, c: s.process_new_catch(c))
        assert result["sent"] == 3

        # כל מנוי לוחץ "I'm coming" על ההתראה שלו
        alerts = {alert.user_id: alert for alert in await alerts_for_catch(db_session, catch.id)}
        for buyer in buyers:
            alert = alerts[buyer.id]
            await send_wa(test_client, build_wa_button(buyer.phone_number, f"fish_coming_{catch.id}_{alert.id}"))

        responders = await db_session.execute(
            select(func.count()).select_from(FishCatchResponse).where(FishCatchResponse.catch_id == catch.id)
        )
        assert responders.scalar_one() == 3

        # המוכר מסמן sold out; ה-job יוצא רק אחרי commit
        jobs = PostCommitJobs()
        await FishCatchService(db_session, jobs=jobs).update_status(catch, FishCatchStatus.SOLD_OUT)
        await db_session.commit()
        jobs.release(publisher)
        assert publisher.named("notify_catch_sold_out") == [(catch.id,)]

        result = await _run_batch(db_session, publisher, catch.id, lambda s, c: s.notify_sold_out(c))

        assert (result["responders"], result["alternatives_sent"], result["fallback_sent"]) == (3, 3, 0)

        total = await db_session.execute(
            select(func.count()).select_from(OutboxMessage).where(
                OutboxMessage.message_type == OutboxMessageType.SOLD_OUT_ALTERNATIVES.value
            )
        )
        assert total.scalar_one() == 3

        for buyer in buyers:
            [row] = await outbox_for(db_session, buyer.phone_number, OutboxMessageType.SOLD_OUT_ALTERNATIVES.value)
            message = OutboundMessage.from_content(row.message_content)
            assert message.kind == OutboundKind.LIST
            assert [r.id for r in message.sections[0].rows] == [f"fish_view_{near.id}", f"fish_view_{farther.id}"]
            assert result["alternative_catch_ids"][buyer.id] == [near.id, farther.id]

        # הרצה חוזרת (למשל retry של ה-job) לא שולחת שוב
        again = await _run_batch(db_session, publisher, catch.id, lambda s, c: s.notify_sold_out(c))
        assert again["responders"] == 0
        total = await db_session.execute(
            select(func.count()).select_from(OutboxMessage).where(
                OutboxMessage.message_type == OutboxMessageType.SOLD_OUT_ALTERNATIVES.value
            )
        )
        assert total.scalar_one() == 3
