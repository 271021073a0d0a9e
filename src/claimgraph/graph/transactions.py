"""Transaction orchestrator: one unit of work, one backend transaction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from claimgraph.rowstore.base import RowStore

from .journal import TransactionJournal

logger = logging.getLogger(__name__)


@dataclass
class Tracked:
    """Handler result carrying the change records for the journal."""

    result: Any
    changes: list[dict[str, Any]] = field(default_factory=list)


Handler = Callable[[str], Awaitable[Any]]


class TransactionOrchestrator:
    def __init__(self, rowstore: RowStore, journal: TransactionJournal | None = None):
        self.rowstore = rowstore
        self.journal = journal if journal is not None else TransactionJournal()

    async def run(self, label: str, handler: Handler) -> Any:
        """
        Begin, run `handler(transaction_id)`, commit.

        Any error, cancellation included, rolls the transaction back and is
        re-raised unchanged; a failing rollback is logged and does not replace it.
        """
        transaction_id = await self.rowstore.create_transaction()
        try:
            out = await handler(transaction_id)
            await self.rowstore.update_transaction(transaction_id, commit=True)
        except BaseException:
            try:
                await self.rowstore.update_transaction(transaction_id, rollback=True)
            except Exception:
                logger.exception("rollback of %s (%s) failed", label, transaction_id)
            self.journal.append(label, "rolledback", [])
            logger.info("%s rolled back (%s)", label, transaction_id)
            raise

        if isinstance(out, Tracked):
            result, changes = out.result, out.changes
        else:
            result, changes = out, []
        self.journal.append(label, "committed", changes)
        logger.debug("%s committed (%s, %d changes)", label, transaction_id, len(changes))
        return result
