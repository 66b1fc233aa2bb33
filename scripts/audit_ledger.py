from __future__ import annotations

import argparse
import asyncio
import sys

from shiftcall.core.errors import LedgerInvariantViolation
from shiftcall.core.logging import configure_logging
from shiftcall.persistence.db import SessionLocal
from shiftcall.services.credits.ledger import CreditLedger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify credit grant balances against the transaction history")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    return parser


async def _audit(args: argparse.Namespace) -> int:
    configure_logging()
    async with SessionLocal() as session:
        try:
            audit = await CreditLedger().audit_ledger(session=session, organization_id=args.organization)
        except LedgerInvariantViolation as exc:
            print(f"ledger_invariant_violation organization_id={args.organization} detail={exc}", file=sys.stderr)
            return 1
    print(
        f"ledger_ok organization_id={audit.organization_id} grants={audit.grants_checked} "
        f"transactions={audit.transactions_checked}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_audit(_build_parser().parse_args())))
