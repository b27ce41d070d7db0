"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SEND_WHATSAPP_ON_REGISTER", "false")

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from clinic_queue.broadcast import QueueBroadcaster
from clinic_queue.config import Settings
from clinic_queue.main import app, get_queue_service
from clinic_queue.models import Entry, EntryKind, EntryStatus
from clinic_queue.service import QueueService


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, minutes: int = 1) -> None:
        self.now += timedelta(minutes=minutes)


class RecordingBroadcaster(QueueBroadcaster):
    def __init__(self) -> None:
        super().__init__()
        self.published = []

    async def publish(self, views) -> None:
        self.published.append(list(views))
        await super().publish(views)


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls = []

    def send(self, phone: str, sequence_number: int, name: str) -> bool:
        self.calls.append((phone, sequence_number, name))
        return self.result


class FailingNotifier:
    def send(self, phone: str, sequence_number: int, name: str) -> bool:
        raise ConnectionError("gateway timeout")


def make_entry(
    entry_id: int,
    kind: EntryKind,
    status: EntryStatus = EntryStatus.WAITING,
    arrival_time: datetime = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc),
    sequence_number: int = None,
) -> Entry:
    return Entry(
        id=entry_id,
        name=f"Patient {entry_id}",
        phone="9876543210",
        sequence_number=sequence_number if sequence_number is not None else entry_id,
        kind=kind,
        status=status,
        arrival_time=arrival_time,
    )


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        hospital_base_url="http://clinic.test/",
        send_whatsapp_on_register=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(engine, broadcaster, notifier, settings, clock) -> QueueService:
    return QueueService(engine, broadcaster, notifier, settings, clock)


@pytest.fixture
def client(service: QueueService) -> Generator[TestClient, None, None]:
    """Test client wired to the in-memory service."""
    app.dependency_overrides[get_queue_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
