from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.credit import Credit
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Billing audit trail.

    Each event becomes a `LedgerEntry` saved through the DB manager and is
    mirrored as one JSON line in an append-only file for log shippers.
    Credit movements are logged from the `Credit` row itself so the audit
    trail and the ledger rows cannot disagree about balances.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_credit(
        self, credit: Credit, message: str, extra_details: Optional[dict[str, Any]] = None
    ) -> None:
        details: dict[str, Any] = {
            "credit_id": credit.id,
            "transaction_type": credit.transaction_type,
            "amount": credit.amount,
            "balance_before": credit.balance_before,
            "balance_after": credit.balance_after,
            **credit.metadata,
            **(extra_details or {}),
        }
        await self.log_transaction(
            user_id=credit.user_id,
            message=message,
            details=details,
            correlation_id=credit.reference,
        )

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.TRANSACTION, user_id, message, details, correlation_id)

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.ERROR, user_id, message, details, correlation_id)

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = await self._db.add_ledger_entry(
            LedgerEntry(
                event_type=event_type,
                user_id=user_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )
        self._append(entry)

    def _append(self, entry: LedgerEntry) -> None:
        # The file mirror never fails the billing operation that produced it
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.serialize_for_db(), default=str) + "\n")
        except OSError:
            logger.exception(
                "Failed to append ledger file",
                extra={"path": str(self._file_path), "user_id": entry.user_id},
            )
