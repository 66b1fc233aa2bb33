from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from shiftcall.core.logging import configure_logging
from shiftcall.persistence.db import SessionLocal
from shiftcall.services.credits.ledger import CreditLedger


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _build_parser() -> argparse.ArgumentParser:
    # Manual grants cover support credits and trials issued outside the billing system.
    parser = argparse.ArgumentParser(description="Grant SMS credits to an organization")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    parser.add_argument("--credits", required=True, type=int, help="Number of credits to grant")
    parser.add_argument("--source", required=True, help="Source type: trial|subscription|bundle")
    parser.add_argument("--source-ref", default=None, help="Optional external reference")
    parser.add_argument("--expires-at", default=None, help="ISO-8601 expiry; omit for non-expiring credits")
    return parser


async def _grant(args: argparse.Namespace) -> None:
    configure_logging()
    async with SessionLocal() as session:
        grant = await CreditLedger().grant(
            session=session,
            organization_id=args.organization,
            credits=args.credits,
            source_type=args.source,
            source_ref=args.source_ref,
            expires_at=_parse_expiry(args.expires_at),
        )
    print(f"grant_id={grant.id} organization_id={grant.organization_id} credits={grant.credits_granted}")


if __name__ == "__main__":
    asyncio.run(_grant(_build_parser().parse_args()))
