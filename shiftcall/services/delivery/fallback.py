from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import zlib

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiftcall.core.clock import TimeProvider, ensure_utc, utc_now
from shiftcall.core.config import Settings, get_settings
from shiftcall.domain.models import Delivery
from shiftcall.domain.states import ESCALATABLE, Channel, DeliveryStatus
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.services.credits.ledger import CreditLedger
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    candidates: int
    claimed: int
    sms_sent: int
    failed: int
    # Claims lost to another sweeper or a late receipt.
    skipped: int
    errors: int


def shard_for(campaign_id: str, shard_count: int) -> int:
    return zlib.crc32(campaign_id.encode("utf-8")) % max(1, shard_count)


class FallbackScheduler:
    """Periodic sweep that promotes unconfirmed push deliveries to SMS once their deadline passes."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        channels: ChannelSet,
        ledger: CreditLedger | None = None,
        settings: Settings | None = None,
        time_provider: TimeProvider | None = None,
        shard_count: int | None = None,
        shard_index: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._time_provider = time_provider or utc_now
        self._orchestrator = DeliveryOrchestrator(
            channels=channels,
            ledger=ledger or CreditLedger(time_provider=self._time_provider),
            settings=self._settings,
            time_provider=self._time_provider,
        )
        self._shard_count = max(1, int(shard_count if shard_count is not None else self._settings.sweep_shard_count))
        self._shard_index = int(shard_index if shard_index is not None else self._settings.sweep_shard_index)
        if not 0 <= self._shard_index < self._shard_count:
            raise ValueError("sweep shard index must be within the shard count")

    async def due_delivery_ids(self, *, limit: int | None = None) -> list[str]:
        resolved_limit = max(1, int(limit or self._settings.sweep_batch_limit))
        now = ensure_utc(self._time_provider())
        async with self._session_factory() as session:
            # Plain read; the per-delivery claim decides who escalates.
            rows = (
                await session.execute(
                    select(Delivery.id, Delivery.campaign_id)
                    .where(
                        Delivery.channel == Channel.PUSH.value,
                        Delivery.status.in_([status.value for status in ESCALATABLE]),
                        Delivery.fallback_processed.is_(False),
                        Delivery.fallback_due_at.is_not(None),
                        Delivery.fallback_due_at <= now,
                    )
                    .order_by(Delivery.fallback_due_at.asc(), Delivery.id.asc())
                    .limit(resolved_limit * self._shard_count)
                )
            ).all()
        ids = [
            str(delivery_id)
            for delivery_id, campaign_id in rows
            if shard_for(campaign_id, self._shard_count) == self._shard_index
        ]
        return ids[:resolved_limit]

    async def _escalate_one(self, delivery_id: str) -> Delivery | None:
        async with self._session_factory() as session:
            return await self._orchestrator.escalate(session=session, delivery_id=delivery_id)

    async def tick(self) -> SweepResult:
        delivery_ids = await self.due_delivery_ids()
        if not delivery_ids:
            return SweepResult(candidates=0, claimed=0, sms_sent=0, failed=0, skipped=0, errors=0)

        semaphore = asyncio.Semaphore(max(1, int(self._settings.batch_send_concurrency)))

        async def _guarded(delivery_id: str) -> Delivery | None:
            async with semaphore:
                return await self._escalate_one(delivery_id)

        outcomes = await asyncio.gather(*(_guarded(delivery_id) for delivery_id in delivery_ids), return_exceptions=True)
        claimed = sms_sent = failed = skipped = errors = 0
        for delivery_id, outcome in zip(delivery_ids, outcomes):
            if isinstance(outcome, BaseException):
                errors += 1
                logger.error("fallback_escalation_error delivery_id=%s", delivery_id, exc_info=outcome)
                continue
            if outcome is None:
                skipped += 1
                continue
            claimed += 1
            if outcome.status == DeliveryStatus.SMS_SENT.value:
                sms_sent += 1
            elif outcome.status in (DeliveryStatus.FAILED.value, DeliveryStatus.SMS_FAILED.value):
                failed += 1
        result = SweepResult(
            candidates=len(delivery_ids),
            claimed=claimed,
            sms_sent=sms_sent,
            failed=failed,
            skipped=skipped,
            errors=errors,
        )
        logger.info(
            "fallback_sweep candidates=%s claimed=%s sms_sent=%s failed=%s skipped=%s errors=%s",
            result.candidates,
            result.claimed,
            result.sms_sent,
            result.failed,
            result.skipped,
            result.errors,
        )
        return result

    async def run_forever(self, *, stop_event: asyncio.Event | None = None) -> None:
        interval_s = max(1, int(self._settings.sweep_interval_seconds))
        while stop_event is None or not stop_event.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001 - keep the sweep alive while surfacing failures in worker logs.
                logger.exception("fallback sweep failed")
            if stop_event is None:
                await asyncio.sleep(interval_s)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
