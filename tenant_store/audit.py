"""Append-only audit log for destructive operations."""

from __future__ import annotations

import logging

from .client import RowStoreClient
from .logging import get_logger, log_event
from .models import AuditEntry

logger = get_logger(__name__)


class AuditLogSink:
    """Writes one row per audit entry; existing rows are never rewritten."""

    def __init__(self, client: RowStoreClient) -> None:
        self._client = client

    def record(self, entry: AuditEntry) -> int:
        row_index = self._client.append_row(entry.to_row())
        log_event(
            logger,
            "audit.recorded",
            table=self._client.table,
            row_index=row_index,
            actor=entry.actor_principal,
            target_id=entry.target_record_id,
        )
        return row_index

    def entries(self) -> list[AuditEntry]:
        result: list[AuditEntry] = []
        for row in self._client.read_data_rows():
            if not row or not any(row):
                continue
            try:
                result.append(AuditEntry.from_row(row))
            except ValueError:
                log_event(logger, "audit.row.unreadable", level=logging.WARNING, table=self._client.table, row=list(row))
        return result
