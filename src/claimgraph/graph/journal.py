"""
Bounded local journal of recent transactions.

A best-effort mirror kept by the client session; it is not authoritative
and is never reconciled with the audit table. Append-then-trim, last write
wins when several sessions share a file.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200


@dataclass
class JournalEntry:
    label: str
    status: str  # committed | rolledback
    changes: list[dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> JournalEntry:
        return cls(
            label=d.get("label", ""),
            status=d.get("status", ""),
            changes=list(d.get("changes") or []),
            id=d.get("id") or uuid.uuid4().hex,
            created_at=d.get("created_at") or d.get("createdAt") or "",
        )


class TransactionJournal:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, path: str | Path | None = None):
        self.capacity = capacity
        self.path = Path(path) if path else None
        self._entries: deque[JournalEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def init(self) -> TransactionJournal:
        """Reload persisted entries, keeping the newest `capacity`."""
        self._entries.clear()
        if self.path is None or not self.path.exists():
            return self
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable journal %s: %s", self.path, e)
            return self
        for item in raw if isinstance(raw, list) else []:
            self._entries.append(JournalEntry.from_dict(item))
        return self

    def clear(self) -> None:
        self._entries.clear()
        self._persist()

    def append(self, label: str, status: str, changes: list[dict[str, Any]] | None = None) -> JournalEntry:
        entry = JournalEntry(label=label, status=status, changes=list(changes or []))
        self._entries.append(entry)
        self._persist()
        return entry

    def entries(self) -> list[JournalEntry]:
        """Oldest first."""
        return list(self._entries)

    def _persist(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps([e.to_dict() for e in self._entries], default=str),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("could not persist journal to %s: %s", self.path, e)


@dataclass
class ClientSession:
    """Per-client context: owns the journal and the default team."""

    journal: TransactionJournal = field(default_factory=TransactionJournal)
    team_id: str | None = None

    @classmethod
    def open(cls, capacity: int = DEFAULT_CAPACITY, path: str | None = None, team_id: str | None = None) -> ClientSession:
        return cls(journal=TransactionJournal(capacity=capacity, path=path).init(), team_id=team_id)
