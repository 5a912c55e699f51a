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
    Audit trail for billing: every balance change, failed provisioning step,
    orphaned panel server and admin change becomes a `LedgerEntry`.

    The entry is stored through the `BaseDBManager` and mirrored as one JSON
    line in `file_path` for log shippers. Inside a unit of work the stored
    entry rolls back with it and the file line is only written once the unit
    commits, so the file never records a change that did not happen.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        """A credit movement or a purchase committed for `user_id`."""
        return await self.record(
            LedgerEventType.TRANSACTION, message, details, user_id, correlation_id
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.ERROR, message, details, user_id, correlation_id
        )

    async def log_reconciliation(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        """A panel server exists that no local purchase accounts for."""
        return await self.record(
            LedgerEventType.RECONCILIATION, message, details, user_id, correlation_id
        )

    async def log_system(
        self,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.SYSTEM, message, details, None, correlation_id
        )

    async def record(
        self,
        event_type: LedgerEventType,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        entry = await self._db.add_ledger_entry(
            LedgerEntry(
                event_type=event_type,
                user_id=user_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )
        self._db.on_commit(lambda: self._mirror(entry))
        return entry

    def _mirror(self, entry: LedgerEntry) -> None:
        # The stored entry is authoritative; a failed file write only warns.
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.model_dump(mode="json"), default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not append to ledger file %s: %s", self._file_path, exc)
