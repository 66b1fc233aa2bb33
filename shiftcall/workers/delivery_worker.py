from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq.connections import RedisSettings

from shiftcall.core.config import get_settings
from shiftcall.core.logging import configure_logging
from shiftcall.domain.contacts import JobProfile
from shiftcall.persistence.db import SessionLocal
from shiftcall.providers.channels.factory import get_channels
from shiftcall.services.delivery.dispatch import CampaignDispatcher, batch_from_payload
from shiftcall.services.delivery.fallback import FallbackScheduler

logger = logging.getLogger(__name__)


async def send_campaign_batch(ctx, job_payload: dict[str, Any], batch_payload: dict[str, Any]) -> dict[str, int]:
    # Send one admitted batch; deliveries already created for a recipient are returned, not re-sent.
    dispatcher: CampaignDispatcher = ctx["dispatcher"]
    job = JobProfile.model_validate(job_payload)
    batch = batch_from_payload(batch_payload)
    outcomes = await dispatcher.send_batch(job=job, batch=batch)
    sent = sum(1 for outcome in outcomes if outcome.delivery_id is not None)
    logger.info(
        "campaign_batch_processed campaign_id=%s batch_id=%s sent=%s rejected=%s",
        batch.campaign_id,
        batch.batch_id,
        sent,
        len(outcomes) - sent,
    )
    return {"sent": sent, "rejected": len(outcomes) - sent}


async def _startup(ctx) -> None:
    # Start the fallback sweep with the worker so escalations continue when API traffic is idle.
    configure_logging()
    channels = get_channels()
    ctx["dispatcher"] = CampaignDispatcher(session_factory=SessionLocal, channels=channels)
    ctx["sweep_stop"] = asyncio.Event()
    scheduler = FallbackScheduler(session_factory=SessionLocal, channels=channels)
    ctx["sweep_task"] = asyncio.create_task(scheduler.run_forever(stop_event=ctx["sweep_stop"]))


async def _shutdown(ctx) -> None:
    # Stop the sweep loop on shutdown to avoid dangling coroutines in tests and local runs.
    stop = ctx.get("sweep_stop")
    if stop is not None:
        stop.set()
    task = ctx.get("sweep_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.dispatch_queue_name
    # Replays are safe: recipients with an existing delivery are returned, not re-sent.
    max_tries = 3
    functions = [send_campaign_batch]
    on_startup = _startup
    on_shutdown = _shutdown
