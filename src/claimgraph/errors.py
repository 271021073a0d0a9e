"""Error taxonomy shared by the gateways and the statement store."""

from __future__ import annotations


class ClaimGraphError(Exception):
    """Base class for every error raised by claimgraph."""


class RowNotFoundError(ClaimGraphError):
    def __init__(self, table_id: str, row_id: str):
        super().__init__(f"row {row_id!r} not found in table {table_id!r}")
        self.table_id = table_id
        self.row_id = row_id


class RowConflictError(ClaimGraphError):
    def __init__(self, table_id: str, row_id: str):
        super().__init__(f"row {row_id!r} already exists in table {table_id!r}")
        self.table_id = table_id
        self.row_id = row_id


class ValidationError(ClaimGraphError):
    """Input rejected before any row was touched."""


class MissingSnapshotError(ValidationError):
    """Rollback needs a before/after snapshot the audit entry does not have."""


class RollbackNotSupportedError(ValidationError):
    """The audit entry's action cannot be inverted."""


class TransactionError(ClaimGraphError):
    """Unknown, closed or otherwise unusable transaction handle."""
