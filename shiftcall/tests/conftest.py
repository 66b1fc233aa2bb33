from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shiftcall.core.config import Settings
from shiftcall.domain.models import Base
from shiftcall.persistence.db import build_engine, build_session_factory
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.providers.channels.fake import FakePortalChannel, FakePushChannel, FakeSmsChannel
from shiftcall.services.credits.ledger import CreditLedger


class MutableClock:
    # Injected time source; tests move it forward instead of sleeping through fallback windows.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'shiftcall.db'}",
        channel_provider="fake",
        dispatch_execution_mode="inline",
        fallback_window_seconds=30,
        max_delivery_attempts=2,
        batch_size=2,
        batch_interval_seconds=0,
        batch_send_concurrency=4,
        channel_call_timeout_ms=500,
    )


@pytest.fixture
async def engine(settings: Settings):
    # File-backed SQLite so concurrent sessions contend on real database locks.
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def push() -> FakePushChannel:
    return FakePushChannel()


@pytest.fixture
def sms() -> FakeSmsChannel:
    return FakeSmsChannel()


@pytest.fixture
def portal() -> FakePortalChannel:
    return FakePortalChannel()


@pytest.fixture
def channels(push: FakePushChannel, sms: FakeSmsChannel, portal: FakePortalChannel) -> ChannelSet:
    return ChannelSet(push=push, sms=sms, portal=portal)


@pytest.fixture
def ledger(clock: MutableClock) -> CreditLedger:
    return CreditLedger(time_provider=clock)
