"""
בדיקות ל-DedupGate - קבלת הודעה פעם אחת בלבד.

מכסה:
- הודעה חדשה מתקבלת, כפילות נדחית (שכבת Redis)
- בלי Redis - רשומת ה-DB לבד מזהה כפילות
- מפתח Redis שפג אבל רשומת DB קיימת - עדיין כפילות
- סימון completed/failed וניקוי רשומות ישנות
- workers מקבילים (עם Redis ובלי) - בדיוק NEW אחד ורשומה אחת
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import event, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.db.database import Base, utcnow
from app.db.models.processed_webhook import ProcessedWebhook, ProcessingStatus
from app.domain.services.dedup_service import DedupGate, DedupResult


class TestDedupGate:

    @pytest.mark.unit
    async def test_new_then_duplicate(self, db_session, fake_redis) -> None:
        gate = DedupGate(db_session, fake_redis)

        assert await gate.accept("wamid.A") == DedupResult.NEW
        assert await gate.accept("wamid.A") == DedupResult.DUPLICATE
        assert await gate.accept("wamid.B") == DedupResult.NEW

        assert fake_redis._ttls[DedupGate.cache_key("wamid.A")] == settings.DEDUP_CACHE_TTL_SECONDS

    @pytest.mark.unit
    async def test_durable_record_without_redis(self, db_session) -> None:
        gate = DedupGate(db_session, None)

        assert await gate.accept("wamid.C") == DedupResult.NEW
        assert await gate.accept("wamid.C") == DedupResult.DUPLICATE

        rows = (await db_session.execute(select(ProcessedWebhook))).scalars().all()
        assert [row.message_id for row in rows] == ["wamid.C"]
        assert rows[0].status == ProcessingStatus.PROCESSING.value

    @pytest.mark.unit
    async def test_expired_cache_falls_back_to_durable_record(self, db_session, fake_redis) -> None:
        gate = DedupGate(db_session, fake_redis)
        assert await gate.accept("wamid.D") == DedupResult.NEW

        # ה-TTL פג, ה-retry של Meta מגיע אחרי כמה דקות
        await fake_redis.delete(DedupGate.cache_key("wamid.D"))

        assert await gate.accept("wamid.D") == DedupResult.DUPLICATE

    @pytest.mark.unit
    async def test_mark_completed_and_failed(self, db_session, fake_redis) -> None:
        gate = DedupGate(db_session, fake_redis)
        await gate.accept("wamid.ok")
        await gate.accept("wamid.bad")

        await gate.mark_completed("wamid.ok")
        await gate.mark_failed("wamid.bad", "boom")

        ok = await db_session.get(ProcessedWebhook, "wamid.ok", populate_existing=True)
        bad = await db_session.get(ProcessedWebhook, "wamid.bad", populate_existing=True)
        assert ok.status == ProcessingStatus.COMPLETED.value
        assert ok.completed_at is not None
        assert bad.status == ProcessingStatus.FAILED.value
        assert bad.last_error == "boom"

        # הודעה שנכשלה לא מעובדת שוב
        assert await gate.accept("wamid.bad") == DedupResult.DUPLICATE

    @pytest.mark.unit
    async def test_cleanup_removes_only_old_records(self, db_session) -> None:
        gate = DedupGate(db_session, None)
        await gate.accept("wamid.old")
        await gate.accept("wamid.new")
        await db_session.execute(
            update(ProcessedWebhook)
            .where(ProcessedWebhook.message_id == "wamid.old")
            .values(processed_at=utcnow() - timedelta(days=30))
        )
        await db_session.commit()

        deleted = await gate.cleanup(days=7)

        assert deleted == 1
        remaining = (await db_session.execute(select(ProcessedWebhook.message_id))).scalars().all()
        assert remaining == ["wamid.new"]


# ============================================================================
# TestConcurrentAccept - שני workers מקבלים את אותו message_id בו-זמנית
# ============================================================================


@pytest.fixture
async def shared_file_db(tmp_path):
    """
    SQLite על קובץ - לכל session חיבור משלו, כמו שני workers מול אותו DB.
    BEGIN IMMEDIATE מסדר את הכותבים בתור במקום להחזיר 'database is locked'.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dedup.db'}",
        connect_args={"timeout": 15},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def _accept_in_own_session(session_maker, redis, message_id: str) -> DedupResult:
    async with session_maker() as session:
        return await DedupGate(session, redis).accept(message_id)


async def _stored_ids(session_maker) -> list[str]:
    async with session_maker() as session:
        return list((await session.execute(select(ProcessedWebhook.message_id))).scalars().all())


class TestConcurrentAccept:

    @pytest.mark.unit
    async def test_two_workers_with_cache(self, shared_file_db, fake_redis) -> None:
        results = await asyncio.gather(
            _accept_in_own_session(shared_file_db, fake_redis, "wamid.race"),
            _accept_in_own_session(shared_file_db, fake_redis, "wamid.race"),
        )

        assert sorted(results) == [DedupResult.DUPLICATE, DedupResult.NEW]
        assert await _stored_ids(shared_file_db) == ["wamid.race"]

    @pytest.mark.unit
    async def test_two_workers_without_cache(self, shared_file_db) -> None:
        # בלי Redis שניהם מגיעים ל-INSERT; המפתח הייחודי מכריע
        results = await asyncio.gather(
            _accept_in_own_session(shared_file_db, None, "wamid.race"),
            _accept_in_own_session(shared_file_db, None, "wamid.race"),
        )

        assert sorted(results) == [DedupResult.DUPLICATE, DedupResult.NEW]
        assert await _stored_ids(shared_file_db) == ["wamid.race"]

    @pytest.mark.unit
    async def test_many_workers_after_cache_expired(self, shared_file_db, fake_redis) -> None:
        # ה-TTL פג בין ה-retries של Meta - רק הרשומה הקבועה עוצרת את כולם
        assert await _accept_in_own_session(shared_file_db, fake_redis, "wamid.late") == DedupResult.NEW
        await fake_redis.delete(DedupGate.cache_key("wamid.late"))

        results = await asyncio.gather(*[
            _accept_in_own_session(shared_file_db, None, "wamid.late") for _ in range(5)
        ])

        assert results == [DedupResult.DUPLICATE] * 5
        assert await _stored_ids(shared_file_db) == ["wamid.late"]

    @pytest.mark.unit
    async def test_exactly_one_winner_among_many(self, shared_file_db) -> None:
        results = await asyncio.gather(*[
            _accept_in_own_session(shared_file_db, None, "wamid.crowd") for _ in range(5)
        ])

        assert results.count(DedupResult.NEW) == 1
        assert results.count(DedupResult.DUPLICATE) == 4
