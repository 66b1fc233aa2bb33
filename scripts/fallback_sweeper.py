from __future__ import annotations

import argparse
import asyncio

from shiftcall.core.logging import configure_logging
from shiftcall.persistence.db import SessionLocal
from shiftcall.providers.channels.factory import get_channels
from shiftcall.services.delivery.fallback import FallbackScheduler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the SMS fallback sweep outside the ARQ worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--shard-count", type=int, default=None, help="Total sweeper shards")
    parser.add_argument("--shard-index", type=int, default=None, help="Shard handled by this process")
    return parser


async def _main(args: argparse.Namespace) -> None:
    # Boot a dedicated sweep loop so escalations run independently from API handlers.
    configure_logging()
    scheduler = FallbackScheduler(
        session_factory=SessionLocal,
        channels=get_channels(),
        shard_count=args.shard_count,
        shard_index=args.shard_index,
    )
    if args.once:
        result = await scheduler.tick()
        print(
            f"candidates={result.candidates} claimed={result.claimed} sms_sent={result.sms_sent} "
            f"failed={result.failed} skipped={result.skipped} errors={result.errors}"
        )
        return
    await scheduler.run_forever()


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))
