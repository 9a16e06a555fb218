"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- FakeRedis and a recording job publisher in place of Redis and Celery
- Test data factories (users, sellers, catches, subscriptions)
"""
import uuid
from datetime import timedelta
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  (רישום המודלים על Base.metadata)
from app.db.database import Base, get_db, utcnow
from app.db.models.fish_catch import FishCatch, FishCatchStatus
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_subscription import AlertFrequency, FishSubscription
from app.db.models.fish_type import FishType
from app.db.models.user import User
from app.main import app
from app.workers.publisher import get_job_publisher


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture - pytest-asyncio עם asyncio_mode=auto מטפל בזה


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # pysqlite מנהל טרנזקציות בעצמו ושובר SAVEPOINT; מעבירים את השליטה ל-SQLAlchemy
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Redis / Celery replacements
# ============================================================================


class FakePipeline:
    """פקודות נאספות ומבוצעות יחד ב-execute(), כמו pipeline של redis.asyncio"""

    def __init__(self, redis: "FakeRedis", transaction: bool) -> None:
        self._redis = redis
        self.transaction = transaction
        self._commands: list[tuple[str, tuple]] = []

    def incr(self, key: str) -> "FakePipeline":
        self._commands.append(("incr", (key,)))
        return self

    def expire(self, key: str, ttl: int) -> "FakePipeline":
        self._commands.append(("expire", (key, ttl)))
        return self

    async def execute(self) -> list[Any]:
        self._redis.executed_pipelines.append((self.transaction, [name for name, _ in self._commands]))
        results = [await getattr(self._redis, name)(*args) for name, args in self._commands]
        self._commands = []
        return results


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.executed_pipelines: list[tuple[bool, list[str]]] = []

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def decr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) - 1 if current is not None else -1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


class RecordingPublisher:
    """JobPublisher שרק רושם - במקום Celery"""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    def process_incoming_message(self, payload: dict) -> None:
        self._record("process_incoming_message", payload)

    def send_outbox_message(self, outbox_id: int, countdown: int | None = None) -> None:
        self._record("send_outbox_message", outbox_id)

    def process_new_catch(self, catch_id: int) -> None:
        self._record("process_new_catch", catch_id)

    def notify_catch_sold_out(self, catch_id: int) -> None:
        self._record("notify_catch_sold_out", catch_id)

    def named(self, name: str) -> list[tuple]:
        return [args for call_name, args in self.calls if call_name == name]


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, publisher: RecordingPublisher):
    """Create test client with database and publisher overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_publisher] = lambda: publisher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_whatsapp_provider():
    """ה-singleton של הספק מחזיק circuit breaker - מאפסים יחד"""
    from app.domain.services.whatsapp.provider_factory import reset_providers
    reset_providers()
    yield
    reset_providers()


# ============================================================================
# Test Data Factories
# ============================================================================


def next_phone() -> str:
    """מספר wa_id ייחודי לכל בדיקה"""
    return f"91984{uuid.uuid4().int % 10**7:07d}"


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating registered test users"""
    async def _create_user(
        phone_number: str | None = None,
        name: str | None = "Test User",
        latitude: float | None = None,
        longitude: float | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            phone_number=phone_number or next_phone(),
            name=name,
            latitude=latitude,
            longitude=longitude,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def fish_type_factory(db_session: AsyncSession):
    async def _create(name_en: str = "Sardine", name_local: str | None = "Mathi") -> FishType:
        existing = await db_session.execute(select(FishType).where(FishType.name_en == name_en))
        fish_type = existing.scalar_one_or_none()
        if fish_type is not None:
            return fish_type
        fish_type = FishType(name_en=name_en, name_local=name_local, emoji="🐟")
        db_session.add(fish_type)
        await db_session.commit()
        await db_session.refresh(fish_type)
        return fish_type

    return _create


@pytest.fixture
def seller_factory(db_session: AsyncSession, user_factory):
    """מוכר דגים עם מיקום קבוע"""
    async def _create(
        latitude: float | None = 9.95,
        longitude: float | None = 76.27,
        business_name: str = "Fort Kochi Fresh",
        user: User | None = None,
    ) -> FishSeller:
        user = user or await user_factory(name="Seller")
        seller = FishSeller(
            user_id=user.id,
            business_name=business_name,
            latitude=latitude,
            longitude=longitude,
        )
        db_session.add(seller)
        await db_session.commit()
        await db_session.refresh(seller)
        return seller

    return _create


@pytest.fixture
def catch_factory(db_session: AsyncSession):
    async def _create(
        seller: FishSeller,
        fish_type: FishType,
        latitude: float | None = None,
        longitude: float | None = None,
        price_per_kg: float = 250.0,
        status: FishCatchStatus = FishCatchStatus.AVAILABLE,
    ) -> FishCatch:
        now = utcnow()
        catch = FishCatch(
            seller_id=seller.id,
            fish_type_id=fish_type.id,
            quantity_kg_min=10,
            quantity_kg_max=20,
            price_per_kg=price_per_kg,
            latitude=latitude if latitude is not None else seller.latitude,
            longitude=longitude if longitude is not None else seller.longitude,
            status=status,
            created_at=now,
            expires_at=now + timedelta(hours=6),
        )
        db_session.add(catch)
        await db_session.commit()
        await db_session.refresh(catch)
        return catch

    return _create


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    async def _create(
        user: User,
        latitude: float = 9.93,
        longitude: float = 76.26,
        radius_km: int = 5,
        fish_type_ids: list[int] | None = None,
        frequency: AlertFrequency = AlertFrequency.IMMEDIATE,
    ) -> FishSubscription:
        subscription = FishSubscription(
            user_id=user.id,
            latitude=latitude,
            longitude=longitude,
            radius_km=radius_km,
            all_fish_types=not fish_type_ids,
            fish_type_ids=fish_type_ids or [],
            alert_frequency=frequency,
            is_active=True,
            is_paused=False,
            blocked_seller_ids=[],
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create


