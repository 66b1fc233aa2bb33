from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiftcall.core.clock import TimeProvider, utc_now
from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import CampaignCancelledError, DeliveryValidationError
from shiftcall.domain.contacts import ContactProfile, JobProfile
from shiftcall.domain.states import CampaignStatus
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.services.credits.ledger import CreditLedger
from shiftcall.services.delivery.batcher import Batch, BatchMember, PriorityBatcher
from shiftcall.services.delivery.campaigns import get_campaign
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator


logger = logging.getLogger(__name__)

SEND_BATCH_JOB = "send_campaign_batch"

_dispatch_pool = None
_dispatch_pool_loop: asyncio.AbstractEventLoop | None = None
_dispatch_pool_lock = asyncio.Lock()


@dataclass(frozen=True)
class SendOutcome:
    contact_id: str
    delivery_id: str | None
    status: str | None
    error_code: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    campaign_id: str
    mode: str
    batches: int
    contacts: int
    queued_batches: int
    outcomes: tuple[SendOutcome, ...]


def batch_to_payload(batch: Batch) -> dict[str, Any]:
    return {
        "campaign_id": batch.campaign_id,
        "batch_id": batch.batch_id,
        "index": batch.index,
        "members": [
            {
                "contact": member.contact.model_dump(mode="json"),
                "priority": member.priority,
                "priority_reason": member.priority_reason,
                "batch_position": member.batch_position,
            }
            for member in batch.members
        ],
    }


def batch_from_payload(payload: dict[str, Any]) -> Batch:
    return Batch(
        campaign_id=payload["campaign_id"],
        batch_id=payload["batch_id"],
        index=int(payload["index"]),
        members=tuple(
            BatchMember(
                contact=ContactProfile.model_validate(member["contact"]),
                priority=int(member["priority"]),
                priority_reason=member["priority_reason"],
                batch_position=int(member["batch_position"]),
            )
            for member in payload["members"]
        ),
    )


async def get_dispatch_queue_pool():
    # Cache ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _dispatch_pool, _dispatch_pool_loop
    current_loop = asyncio.get_running_loop()
    if _dispatch_pool is not None and _dispatch_pool_loop == current_loop:
        return _dispatch_pool
    if _dispatch_pool is not None and _dispatch_pool_loop != current_loop:
        _dispatch_pool = None
    async with _dispatch_pool_lock:
        if _dispatch_pool is None:
            settings = get_settings()
            _dispatch_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.dispatch_queue_name,
            )
            _dispatch_pool_loop = current_loop
    return _dispatch_pool


async def enqueue_campaign_batch(
    *,
    job: JobProfile,
    batch: Batch,
    defer_seconds: int = 0,
) -> bool:
    # Batch index and campaign id make the ARQ job id stable, so a re-dispatch cannot queue a batch twice.
    settings = get_settings()
    defer_delta = timedelta(seconds=max(0, int(defer_seconds)))
    try:
        redis = await get_dispatch_queue_pool()
        await redis.enqueue_job(
            SEND_BATCH_JOB,
            job.model_dump(mode="json"),
            batch_to_payload(batch),
            _job_id=f"{batch.campaign_id}:{batch.batch_id}",
            _queue_name=settings.dispatch_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception:  # noqa: BLE001 - enqueue is best-effort; callers fall back to inline sends.
        logger.warning("dispatch_enqueue_failed campaign_id=%s batch_id=%s", batch.campaign_id, batch.batch_id)
        return False


class CampaignDispatcher:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        channels: ChannelSet,
        ledger: CreditLedger | None = None,
        settings: Settings | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._time_provider = time_provider or utc_now
        self._batcher = PriorityBatcher(time_provider=self._time_provider)
        self._orchestrator = DeliveryOrchestrator(
            channels=channels,
            ledger=ledger or CreditLedger(time_provider=self._time_provider),
            settings=self._settings,
            time_provider=self._time_provider,
        )

    async def start_campaign(
        self,
        *,
        campaign_id: str,
        job: JobProfile,
        candidates: list[ContactProfile],
        mode: str | None = None,
    ) -> DispatchResult:
        resolved_mode = (mode or self._settings.dispatch_execution_mode or "queue").lower()
        async with self._session_factory() as session:
            campaign = await get_campaign(session, campaign_id)
            if campaign.status == CampaignStatus.CANCELLED.value:
                raise CampaignCancelledError(f"Campaign {campaign_id} was cancelled")
            prioritized = self._batcher.rank(campaign_id=campaign_id, candidates=candidates, job=job)
            batch_size = self._settings.batch_size_for_tier(campaign.org_tier)
            batches = self._batcher.slice(prioritized, campaign_id=campaign_id, batch_size=batch_size)
            await self._batcher.record_batches(
                session=session,
                organization_id=campaign.organization_id,
                campaign_id=campaign_id,
                job=job,
                batches=batches,
            )

        outcomes: list[SendOutcome] = []
        queued = 0
        interval = max(0, int(self._settings.batch_interval_seconds))
        for batch in batches:
            if resolved_mode == "queue":
                if await enqueue_campaign_batch(job=job, batch=batch, defer_seconds=batch.index * interval):
                    queued += 1
                    continue
            outcomes.extend(await self.send_batch(job=job, batch=batch))

        logger.info(
            "campaign_dispatched campaign_id=%s mode=%s batches=%s queued=%s",
            campaign_id,
            resolved_mode,
            len(batches),
            queued,
        )
        return DispatchResult(
            campaign_id=campaign_id,
            mode=resolved_mode,
            batches=len(batches),
            contacts=sum(len(batch.members) for batch in batches),
            queued_batches=queued,
            outcomes=tuple(outcomes),
        )

    async def send_batch(self, *, job: JobProfile, batch: Batch) -> list[SendOutcome]:
        semaphore = asyncio.Semaphore(max(1, int(self._settings.batch_send_concurrency)))

        async def _send(member: BatchMember) -> SendOutcome:
            async with semaphore:
                # One session per send so a failed recipient never poisons the rest of the batch.
                async with self._session_factory() as session:
                    try:
                        delivery = await self._orchestrator.send(
                            session=session,
                            contact=member.contact,
                            job=job,
                            campaign_id=batch.campaign_id,
                            priority=member.priority,
                            priority_reason=member.priority_reason,
                            batch_id=batch.batch_id,
                            batch_position=member.batch_position,
                        )
                    except DeliveryValidationError as exc:
                        return SendOutcome(
                            contact_id=member.contact.id, delivery_id=None, status=None, error_code=exc.code
                        )
                    except Exception:  # noqa: BLE001 - one recipient failing must not abort the batch
                        logger.exception(
                            "batch_send_failed campaign_id=%s contact_id=%s", batch.campaign_id, member.contact.id
                        )
                        return SendOutcome(
                            contact_id=member.contact.id, delivery_id=None, status=None, error_code="INTERNAL_ERROR"
                        )
                    return SendOutcome(contact_id=member.contact.id, delivery_id=delivery.id, status=delivery.status)

        return list(await asyncio.gather(*(_send(member) for member in batch.members)))
