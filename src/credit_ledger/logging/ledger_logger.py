from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import OperationEventType, OperationLogEntry


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured operation logger that writes to a file and the database.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `OperationLogEntry` model and the
    configured `BaseDBManager`. Balance truth lives in credit events; these
    entries record what each operation did or why it was refused.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_operation(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            OperationEventType.OPERATION,
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
    ) -> None:
        await self._log(
            OperationEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> None:
        await self._log(
            OperationEventType.SYSTEM,
            user_id=None,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: OperationEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = OperationLogEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_operation_log_entry(entry)

        if self._file_path is None:
            return
        # File mirroring is best effort and never fails the main flow.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Could not write ledger log line to %s", self._file_path)
