"""Graph statement store: models, cascade planner, transactions, audit."""

from .audit import AuditEngine
from .cascade import CascadePlanner, DeleteSet, PlannedDelete
from .journal import ClientSession, JournalEntry, TransactionJournal
from .models import AuditEntry, Claim, Entity, Qualifier, Reference, TableIds
from .store import BulkError, BulkResult, StatementStore
from .transactions import Tracked, TransactionOrchestrator

__all__ = [
    "AuditEngine",
    "CascadePlanner",
    "DeleteSet",
    "PlannedDelete",
    "ClientSession",
    "JournalEntry",
    "TransactionJournal",
    "AuditEntry",
    "Claim",
    "Entity",
    "Qualifier",
    "Reference",
    "TableIds",
    "BulkError",
    "BulkResult",
    "StatementStore",
    "Tracked",
    "TransactionOrchestrator",
]
