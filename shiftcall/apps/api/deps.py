from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiftcall.core.clock import TimeProvider
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.services.credits.ledger import CreditLedger
from shiftcall.services.delivery.dispatch import CampaignDispatcher
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session_factory(request)() as session:
        yield session


def get_time_provider(request: Request) -> TimeProvider:
    return request.app.state.time_provider


def get_channel_set(request: Request) -> ChannelSet:
    return request.app.state.channels


def get_ledger(request: Request) -> CreditLedger:
    return CreditLedger(time_provider=get_time_provider(request))


def get_orchestrator(request: Request) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        channels=get_channel_set(request),
        ledger=get_ledger(request),
        settings=request.app.state.settings,
        time_provider=get_time_provider(request),
    )


def get_dispatcher(request: Request) -> CampaignDispatcher:
    return CampaignDispatcher(
        session_factory=get_session_factory(request),
        channels=get_channel_set(request),
        ledger=get_ledger(request),
        settings=request.app.state.settings,
        time_provider=get_time_provider(request),
    )
