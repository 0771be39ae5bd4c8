from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from reservation_service.db import Base, get_engine, get_session
from reservation_service.models import Provider
from reservation_service.service import ReservationService

NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
DAY = datetime(2030, 1, 10, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: datetime = DAY) -> datetime:
    return day + timedelta(hours=hour, minutes=minute)


class RecordingPublisher:
    def __init__(self):
        self.published = []

    async def publish(self, routing_key: str, body: str):
        self.published.append((routing_key, body))

    @property
    def routing_keys(self):
        return [key for key, _ in self.published]


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(session_factory, publisher):
    return ReservationService(session_factory, publisher=publisher, timeout=30, clock=lambda: NOW)


@pytest.fixture
def add_provider(session_factory):
    async def _add(provider_id: str = "prov-1", hourly_rate: float = 20.0, **fields) -> Provider:
        async with session_factory() as session:
            async with session.begin():
                provider = Provider(id=provider_id, hourly_rate=hourly_rate, **fields)
                session.add(provider)
        return provider

    return _add


@pytest.fixture
def read_provider(session_factory):
    async def _read(provider_id: str = "prov-1") -> Provider:
        async with session_factory() as session:
            result = await session.execute(select(Provider).where(Provider.id == provider_id))
            return result.scalar_one()

    return _read
