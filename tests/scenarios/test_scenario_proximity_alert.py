"""
תרחיש 1 - דגה טרייה ליד מנוי: התראה אחת, נשלחת ומסומנת

מכסה:
- מנוי ב-(9.93, 76.26) ברדיוס 5 ק"מ, דגה ב-(9.95, 76.27) (~2.48 ק"מ) → התראה אחת עם sent_at
- אותו מנוי ברדיוס 2 ק"מ → אין התראה ואין הודעה
- המסלול המלא: פרסום דגה → job אחרי commit → batch התראות → שליחה מה-outbox
"""
import pytest

from app.db.models.fish_alert import FishAlertStatus
from app.db.models.outbox_message import MessageStatus, OutboxMessageType
from app.domain.messages import OutboundKind
from app.domain.services.delivery_service import DeliveryOutcome, OutboundDeliveryService
from app.domain.services.fish.catch_service import FishCatchService
from app.domain.services.post_commit import PostCommitJobs
from app.workers import tasks

from tests.scenarios.conftest import (
    RecordingProvider,
    alerts_for_catch,
    assert_outbox_count,
    outbox_for,
    publisher_patch,
    task_session_patch,
)


async def _post_catch_and_run_batch(db_session, publisher, seller, fish_type):
    """המוכר מפרסם דגה; ה-job של ההתאמה רץ רק אחרי ה-commit"""
    jobs = PostCommitJobs()
    catch = await FishCatchService(db_session, jobs=jobs).create_catch(seller, fish_type.id, 10, 20, 240)
    await db_session.commit()
    jobs.release(publisher)
    assert publisher.named("process_new_catch") == [(catch.id,)]

    with task_session_patch(db_session), publisher_patch(publisher):
        result = await tasks._run_alert_batch(catch.id, lambda service, c: service.process_new_catch(c))
    return catch, result


@pytest.mark.scenario
class TestProximityAlert:
    """דגה בתוך הרדיוס מגיעה למנוי, מחוץ לרדיוס לא"""

    async def test_subscriber_within_radius_gets_one_alert(
        self, db_session, fake_redis, publisher, user_factory, seller_factory,
        fish_type_factory, subscription_factory,
    ) -> None:
        buyer = await user_factory(name="Asha")
        await subscription_factory(buyer, latitude=9.93, longitude=76.26, radius_km=5)
        seller = await seller_factory(latitude=9.95, longitude=76.27)
        sardine = await fish_type_factory()

        catch, result = await _post_catch_and_run_batch(db_session, publisher, seller, sardine)

        assert (result["total_subscribers"], result["sent"]) == (1, 1)
        [alert] = await alerts_for_catch(db_session, catch.id)
        assert alert.user_id == buyer.id
        assert alert.sent_at is not None
        assert alert.failed_at is None
        assert alert.distance_km == pytest.approx(2.48, abs=0.01)

        [row] = await outbox_for(db_session, buyer.phone_number, OutboxMessageType.FISH_ALERT.value)
        assert alert.outbox_message_id == row.id
        assert publisher.named("send_outbox_message") == [(row.id,)]

        # ה-worker שולח את ההודעה
        provider = RecordingProvider()
        delivery = await OutboundDeliveryService(db_session, fake_redis, provider).deliver(row.id)

        assert delivery.outcome == DeliveryOutcome.SENT
        [message] = provider.to(buyer.phone_number)
        assert message.kind == OutboundKind.BUTTONS
        assert "2.5 km away" in message.body
        [row] = await outbox_for(db_session, buyer.phone_number, OutboxMessageType.FISH_ALERT.value)
        assert row.status == MessageStatus.SENT
        [alert] = await alerts_for_catch(db_session, catch.id)
        assert alert.status == FishAlertStatus.SENT

    async def test_subscriber_outside_radius_gets_nothing(
        self, db_session, publisher, user_factory, seller_factory,
        fish_type_factory, subscription_factory,
    ) -> None:
        buyer = await user_factory(name="Ravi")
        await subscription_factory(buyer, latitude=9.93, longitude=76.26, radius_km=2)
        seller = await seller_factory(latitude=9.95, longitude=76.27)
        sardine = await fish_type_factory()

        catch, result = await _post_catch_and_run_batch(db_session, publisher, seller, sardine)

        assert result["total_subscribers"] == 0
        assert await alerts_for_catch(db_session, catch.id) == []
        await assert_outbox_count(db_session, buyer.phone_number, 0)
        assert publisher.named("send_outbox_message") == []
