from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import event

from shiftcall.domain.models import CreditTransaction, MessageLogEvent


@dataclass(eq=False)
class ImmutableRecordError(RuntimeError):
    # Surface attempts to rewrite append-only audit or ledger rows.
    message: str


def _reject_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only and cannot be updated")


def _reject_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only and cannot be deleted")


def install_append_only_guards() -> None:
    # Register once per process; ORM flushes of changed or deleted rows then fail before reaching the database.
    for model in (MessageLogEvent, CreditTransaction):
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)


install_append_only_guards()
