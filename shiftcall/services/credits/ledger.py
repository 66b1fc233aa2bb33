from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.core.clock import TimeProvider, ensure_utc, utc_now
from shiftcall.core.errors import (
    CreditTransactionNotFoundError,
    InsufficientCreditsError,
    LedgerInvariantViolation,
)
from shiftcall.domain.models import CreditGrant, CreditTransaction
from shiftcall.persistence import guards  # noqa: F401  registers append-only guards
from shiftcall.persistence.db import is_postgres


logger = logging.getLogger(__name__)

KIND_CONSUME = "consume"
KIND_REFUND = "refund"

SOURCE_TRIAL = "trial"
SOURCE_SUBSCRIPTION = "subscription"
SOURCE_BUNDLE = "bundle"
_SOURCE_TYPES = {SOURCE_TRIAL, SOURCE_SUBSCRIPTION, SOURCE_BUNDLE}

# Conditional grant updates only lose races on SQLite, where reads are not locked.
_MAX_CONSUME_ATTEMPTS = 5


@dataclass(frozen=True)
class LedgerEntry:
    grant_id: str
    split_index: int
    delta: int


@dataclass(frozen=True)
class ConsumeResult:
    organization_id: str
    message_id: str
    amount: int
    entries: tuple[LedgerEntry, ...]
    # True when the message was already charged and no new rows were written.
    replayed: bool = False


@dataclass(frozen=True)
class RefundResult:
    organization_id: str
    message_id: str
    amount: int
    entries: tuple[LedgerEntry, ...]
    replayed: bool = False


@dataclass(frozen=True)
class CreditBreakdown:
    organization_id: str
    trial: int
    subscription: int
    bundle: int
    expired: int

    @property
    def total_available(self) -> int:
        return self.trial + self.subscription + self.bundle


@dataclass(frozen=True)
class LedgerAudit:
    organization_id: str
    grants_checked: int
    transactions_checked: int


def _entries(rows: list[CreditTransaction]) -> tuple[LedgerEntry, ...]:
    return tuple(
        LedgerEntry(grant_id=row.grant_id, split_index=row.split_index, delta=row.delta)
        for row in sorted(rows, key=lambda item: item.split_index)
    )


class CreditLedger:
    """Prepaid SMS credits: grants consumed oldest-expiry first, one charge per message id."""

    def __init__(self, *, time_provider: TimeProvider | None = None) -> None:
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or utc_now

    def _now(self) -> datetime:
        return ensure_utc(self._time_provider())

    async def grant(
        self,
        *,
        session: AsyncSession,
        organization_id: str,
        credits: int,
        source_type: str,
        source_ref: str | None = None,
        expires_at: datetime | None = None,
        commit: bool = True,
    ) -> CreditGrant:
        if credits <= 0:
            raise ValueError("credits must be positive")
        if source_type not in _SOURCE_TYPES:
            raise ValueError(f"unknown credit source type: {source_type}")
        row = CreditGrant(
            id=uuid4().hex,
            organization_id=organization_id,
            source_type=source_type,
            source_ref=source_ref,
            credits_granted=credits,
            credits_consumed=0,
            credits_remaining=credits,
            expires_at=ensure_utc(expires_at),
            created_at=self._now(),
        )
        session.add(row)
        if commit:
            await session.commit()
        else:
            await session.flush()
        logger.info(
            "credit_grant_created organization_id=%s grant_id=%s source_type=%s credits=%s",
            organization_id,
            row.id,
            source_type,
            credits,
        )
        return row

    async def available_credits(self, *, session: AsyncSession, organization_id: str) -> int:
        breakdown = await self.credit_breakdown(session=session, organization_id=organization_id)
        return breakdown.total_available

    async def credit_breakdown(self, *, session: AsyncSession, organization_id: str) -> CreditBreakdown:
        now = self._now()
        rows = (
            await session.execute(
                select(CreditGrant).where(
                    CreditGrant.organization_id == organization_id,
                    CreditGrant.credits_remaining > 0,
                )
            )
        ).scalars().all()
        totals: dict[str, int] = defaultdict(int)
        for row in rows:
            expires_at = ensure_utc(row.expires_at)
            if expires_at is not None and expires_at <= now:
                totals["expired"] += row.credits_remaining
            else:
                totals[row.source_type] += row.credits_remaining
        return CreditBreakdown(
            organization_id=organization_id,
            trial=totals[SOURCE_TRIAL],
            subscription=totals[SOURCE_SUBSCRIPTION],
            bundle=totals[SOURCE_BUNDLE],
            expired=totals["expired"],
        )

    async def _transactions(
        self, session: AsyncSession, *, message_id: str, kind: str
    ) -> list[CreditTransaction]:
        result = await session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.message_id == message_id, CreditTransaction.kind == kind)
            .order_by(CreditTransaction.split_index.asc())
        )
        return list(result.scalars().all())

    async def _usable_grants(
        self, session: AsyncSession, *, organization_id: str, now: datetime
    ) -> list[CreditGrant]:
        # Oldest expiry first, non-expiring grants last, creation order breaks ties.
        query = (
            select(CreditGrant)
            .where(
                CreditGrant.organization_id == organization_id,
                CreditGrant.credits_remaining > 0,
                or_(CreditGrant.expires_at.is_(None), CreditGrant.expires_at > now),
            )
            .order_by(
                CreditGrant.expires_at.is_(None).asc(),
                CreditGrant.expires_at.asc(),
                CreditGrant.created_at.asc(),
                CreditGrant.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        if is_postgres(session):
            query = query.with_for_update()
        result = await session.execute(query)
        return list(result.scalars().all())

    async def _adjust_grant(
        self,
        session: AsyncSession,
        *,
        grant_id: str,
        delta: int,
        now: datetime | None,
    ) -> bool:
        # Negative delta consumes; the WHERE clause is the guard against overdraw and expiry.
        statement = update(CreditGrant).where(CreditGrant.id == grant_id)
        if delta < 0:
            statement = statement.where(CreditGrant.credits_remaining >= -delta)
            if now is not None:
                statement = statement.where(
                    or_(CreditGrant.expires_at.is_(None), CreditGrant.expires_at > now)
                )
        else:
            statement = statement.where(CreditGrant.credits_consumed >= delta)
        statement = statement.values(
            credits_remaining=CreditGrant.credits_remaining + delta,
            credits_consumed=CreditGrant.credits_consumed - delta,
        ).execution_options(synchronize_session=False)
        result = await session.execute(statement)
        return result.rowcount == 1

    async def _verify_grants(self, session: AsyncSession, grant_ids: list[str]) -> None:
        # Re-read touched grants after each mutation; any drift is a hard failure.
        rows = (
            await session.execute(
                select(CreditGrant)
                .where(CreditGrant.id.in_(grant_ids))
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        for row in rows:
            if row.credits_remaining < 0:
                raise LedgerInvariantViolation(f"grant {row.id} has negative balance {row.credits_remaining}")
            if row.credits_granted - row.credits_consumed != row.credits_remaining:
                raise LedgerInvariantViolation(
                    f"grant {row.id} balance drift: granted={row.credits_granted} "
                    f"consumed={row.credits_consumed} remaining={row.credits_remaining}"
                )

    async def consume(
        self,
        *,
        session: AsyncSession,
        organization_id: str,
        message_id: str,
        amount: int = 1,
        reason: str,
        commit: bool = True,
    ) -> ConsumeResult:
        if amount <= 0:
            raise ValueError("amount must be positive")

        existing = await self._transactions(session, message_id=message_id, kind=KIND_CONSUME)
        if existing:
            return self._replayed_consume(existing, organization_id=organization_id, message_id=message_id)

        for attempt in range(1, _MAX_CONSUME_ATTEMPTS + 1):
            now = self._now()
            grants = await self._usable_grants(session, organization_id=organization_id, now=now)
            available = sum(grant.credits_remaining for grant in grants)
            if available < amount:
                if commit:
                    await session.rollback()
                logger.info(
                    "credit_consume_insufficient organization_id=%s message_id=%s available=%s required=%s",
                    organization_id,
                    message_id,
                    available,
                    amount,
                )
                raise InsufficientCreditsError(
                    organization_id=organization_id, available=available, required=amount
                )

            plan: list[tuple[str, int]] = []
            needed = amount
            for grant in grants:
                if needed <= 0:
                    break
                take = min(grant.credits_remaining, needed)
                plan.append((grant.id, take))
                needed -= take

            applied: list[tuple[str, int]] = []
            for grant_id, take in plan:
                if not await self._adjust_grant(session, grant_id=grant_id, delta=-take, now=now):
                    break
                applied.append((grant_id, take))
            if len(applied) == len(plan):
                break
            # Another consumer drained a grant between our read and write; undo and re-plan.
            for grant_id, take in applied:
                await self._adjust_grant(session, grant_id=grant_id, delta=take, now=None)
            logger.debug(
                "credit_consume_conflict organization_id=%s message_id=%s attempt=%s",
                organization_id,
                message_id,
                attempt,
            )
        else:
            if commit:
                await session.rollback()
            raise InsufficientCreditsError(organization_id=organization_id, available=0, required=amount)

        created_at = self._now()
        rows = [
            CreditTransaction(
                id=uuid4().hex,
                organization_id=organization_id,
                grant_id=grant_id,
                message_id=message_id,
                kind=KIND_CONSUME,
                split_index=index,
                delta=-take,
                reason=reason,
                created_at=created_at,
            )
            for index, (grant_id, take) in enumerate(plan)
        ]
        session.add_all(rows)
        try:
            await session.flush()
            await self._verify_grants(session, [grant_id for grant_id, _ in plan])
            if commit:
                await session.commit()
        except LedgerInvariantViolation:
            if commit:
                await session.rollback()
            raise
        except IntegrityError:
            if not commit:
                raise
            # A concurrent caller charged this message id first; report its charge instead.
            await session.rollback()
            existing = await self._transactions(session, message_id=message_id, kind=KIND_CONSUME)
            if not existing:
                raise
            return self._replayed_consume(existing, organization_id=organization_id, message_id=message_id)

        logger.info(
            "credit_consumed organization_id=%s message_id=%s amount=%s grants=%s reason=%s",
            organization_id,
            message_id,
            amount,
            len(plan),
            reason,
        )
        return ConsumeResult(
            organization_id=organization_id,
            message_id=message_id,
            amount=amount,
            entries=_entries(rows),
        )

    def _replayed_consume(
        self, rows: list[CreditTransaction], *, organization_id: str, message_id: str
    ) -> ConsumeResult:
        if any(row.organization_id != organization_id for row in rows):
            raise LedgerInvariantViolation(
                f"message {message_id} was charged to a different organization"
            )
        logger.info("credit_consume_replayed organization_id=%s message_id=%s", organization_id, message_id)
        return ConsumeResult(
            organization_id=organization_id,
            message_id=message_id,
            amount=-sum(row.delta for row in rows),
            entries=_entries(rows),
            replayed=True,
        )

    async def refund(
        self,
        *,
        session: AsyncSession,
        message_id: str,
        reason: str,
        commit: bool = True,
    ) -> RefundResult:
        consumed = await self._transactions(session, message_id=message_id, kind=KIND_CONSUME)
        if not consumed:
            raise CreditTransactionNotFoundError(f"No credit consumption recorded for message {message_id}")
        organization_id = consumed[0].organization_id

        refunded = await self._transactions(session, message_id=message_id, kind=KIND_REFUND)
        if refunded:
            return self._replayed_refund(refunded, consumed, message_id=message_id)

        # Return exactly what each split took, to the grant it came from.
        for row in consumed:
            if not await self._adjust_grant(session, grant_id=row.grant_id, delta=-row.delta, now=None):
                if commit:
                    await session.rollback()
                raise LedgerInvariantViolation(
                    f"grant {row.grant_id} cannot absorb refund of {-row.delta} for message {message_id}"
                )
        created_at = self._now()
        rows = [
            CreditTransaction(
                id=uuid4().hex,
                organization_id=organization_id,
                grant_id=row.grant_id,
                message_id=message_id,
                kind=KIND_REFUND,
                split_index=row.split_index,
                delta=-row.delta,
                reason=reason,
                created_at=created_at,
            )
            for row in consumed
        ]
        session.add_all(rows)
        try:
            await session.flush()
            await self._verify_grants(session, [row.grant_id for row in consumed])
            if commit:
                await session.commit()
        except LedgerInvariantViolation:
            if commit:
                await session.rollback()
            raise
        except IntegrityError:
            if not commit:
                raise
            await session.rollback()
            refunded = await self._transactions(session, message_id=message_id, kind=KIND_REFUND)
            if not refunded:
                raise
            consumed = await self._transactions(session, message_id=message_id, kind=KIND_CONSUME)
            return self._replayed_refund(refunded, consumed, message_id=message_id)

        amount = sum(row.delta for row in rows)
        logger.info(
            "credit_refunded organization_id=%s message_id=%s amount=%s reason=%s",
            organization_id,
            message_id,
            amount,
            reason,
        )
        return RefundResult(
            organization_id=organization_id,
            message_id=message_id,
            amount=amount,
            entries=_entries(rows),
        )

    def _replayed_refund(
        self,
        refunded: list[CreditTransaction],
        consumed: list[CreditTransaction],
        *,
        message_id: str,
    ) -> RefundResult:
        amount = sum(row.delta for row in refunded)
        if amount != -sum(row.delta for row in consumed):
            raise LedgerInvariantViolation(f"message {message_id} refund does not match its consumption")
        logger.info("credit_refund_replayed message_id=%s", message_id)
        return RefundResult(
            organization_id=refunded[0].organization_id,
            message_id=message_id,
            amount=amount,
            entries=_entries(refunded),
            replayed=True,
        )

    async def audit_ledger(self, *, session: AsyncSession, organization_id: str) -> LedgerAudit:
        """Cross-check every grant balance against the transaction history of an organization.

        Raises LedgerInvariantViolation listing every problem found.
        """
        grants = (
            await session.execute(
                select(CreditGrant)
                .where(CreditGrant.organization_id == organization_id)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        transactions = (
            await session.execute(
                select(CreditTransaction).where(CreditTransaction.organization_id == organization_id)
            )
        ).scalars().all()

        problems: list[str] = []
        net_by_grant: dict[str, int] = defaultdict(int)
        by_message: dict[str, dict[str, int]] = defaultdict(lambda: {KIND_CONSUME: 0, KIND_REFUND: 0})
        grant_ids = {grant.id for grant in grants}
        for row in transactions:
            if row.grant_id not in grant_ids:
                problems.append(f"transaction {row.id} references unknown grant {row.grant_id}")
            if row.kind == KIND_CONSUME and row.delta >= 0:
                problems.append(f"consume transaction {row.id} has non-negative delta")
            if row.kind == KIND_REFUND and row.delta <= 0:
                problems.append(f"refund transaction {row.id} has non-positive delta")
            net_by_grant[row.grant_id] += row.delta
            by_message[row.message_id][row.kind] += row.delta

        for grant in grants:
            if grant.credits_remaining < 0:
                problems.append(f"grant {grant.id} has negative balance")
            if grant.credits_granted - grant.credits_consumed != grant.credits_remaining:
                problems.append(f"grant {grant.id} remaining does not equal granted minus consumed")
            if -net_by_grant[grant.id] != grant.credits_consumed:
                problems.append(
                    f"grant {grant.id} consumed={grant.credits_consumed} but transactions net "
                    f"{-net_by_grant[grant.id]}"
                )

        for message_id, totals in by_message.items():
            if totals[KIND_REFUND] and totals[KIND_REFUND] != -totals[KIND_CONSUME]:
                problems.append(f"message {message_id} refund does not match its consumption")

        if problems:
            logger.error(
                "credit_ledger_audit_failed organization_id=%s problems=%s", organization_id, len(problems)
            )
            raise LedgerInvariantViolation("; ".join(problems))
        return LedgerAudit(
            organization_id=organization_id,
            grants_checked=len(grants),
            transactions_checked=len(transactions),
        )
