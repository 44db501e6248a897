from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured audit logger that writes to the database and a JSONL file.

    Every balance change, payment transition, webhook outcome and
    reconciliation run goes through here. File logging is append-only,
    line-delimited JSON for easier ingestion by log aggregators; it is
    best-effort and never fails the calling operation. DB logging uses the
    `LedgerEntry` model and the configured `BaseDBManager`.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.TRANSACTION,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(
        self,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.SYSTEM,
            user_id=None,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        entry = await self._db.add_ledger_entry(entry)
        if self._file_path is None:
            return entry
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not mirror ledger entry to %s: %s", self._file_path, exc)
        return entry
