"""
Credit Ledger.
Every balance change is a signed ledger row; users.credits is a cache the
ledger updates in the same transaction.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import List, Optional

from .database import get_connection, transaction

logger = logging.getLogger(__name__)


class CreditReason(str, Enum):
    INITIAL = "initial"
    SETTLEMENT = "settlement"
    ADMIN = "admin"


@dataclass
class LedgerEntry:
    id: int
    user_id: str
    delta: int
    reason: str
    related_job_id: Optional[str]
    created_at: datetime

    @property
    def is_settlement_debit(self) -> bool:
        return self.delta < 0 and self.reason == CreditReason.SETTLEMENT.value


class BaseCreditLedger(ABC):

    @abstractmethod
    def debit_if_covered(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """Debit atomically; None when the balance does not cover the amount."""
        pass

    @abstractmethod
    def credit(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> LedgerEntry:
        pass

    @abstractmethod
    def entries_for_job(self, job_id: str) -> List[LedgerEntry]:
        pass


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"Ledger amount must be positive, got {amount}")


class SQLiteCreditLedger(BaseCreditLedger):

    def debit_if_covered(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        _require_positive(amount)
        now = datetime.utcnow()

        with transaction() as conn:
            # Conditional update: a concurrent debit that drained the balance
            # leaves rowcount at 0 here.
            cursor = conn.execute(
                "UPDATE users SET credits = credits - ?, updated_at = ? WHERE user_id = ? AND credits >= ?",
                (amount, now.isoformat(), user_id, amount),
            )
            if cursor.rowcount == 0:
                logger.warning(f"[LEDGER] Debit of {amount} refused for {user_id}")
                return None
            return self._insert(conn, user_id, -amount, reason, related_job_id, now)

    def credit(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> LedgerEntry:
        _require_positive(amount)
        now = datetime.utcnow()

        with transaction() as conn:
            conn.execute(
                "UPDATE users SET credits = credits + ?, updated_at = ? WHERE user_id = ?",
                (amount, now.isoformat(), user_id),
            )
            return self._insert(conn, user_id, amount, reason, related_job_id, now)

    def entries_for_job(self, job_id: str) -> List[LedgerEntry]:
        rows = get_connection().execute(
            "SELECT * FROM credit_ledger WHERE related_job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
        return [
            LedgerEntry(
                id=row["id"],
                user_id=row["user_id"],
                delta=row["delta"],
                reason=row["reason"],
                related_job_id=row["related_job_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _insert(conn, user_id, delta, reason, related_job_id, when) -> LedgerEntry:
        cursor = conn.execute(
            "INSERT INTO credit_ledger (user_id, delta, reason, related_job_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, delta, reason.value, related_job_id, when.isoformat()),
        )
        logger.info(f"[LEDGER] {user_id} {delta:+d} ({reason.value}, job={related_job_id})")
        return LedgerEntry(cursor.lastrowid, user_id, delta, reason.value, related_job_id, when)


class InMemoryCreditLedger(BaseCreditLedger):
    """Ledger over the in-memory user repository, for development and tests."""

    def __init__(self, user_repository):
        self._users = user_repository
        self._entries: List[LedgerEntry] = []
        self._lock = Lock()

    def debit_if_covered(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        _require_positive(amount)
        with self._lock:
            user = self._users.get(user_id)
            if user is None or user.credits < amount:
                logger.warning(f"[LEDGER] Debit of {amount} refused for {user_id}")
                return None
            user.credits -= amount
            self._users.save(user)
            return self._append(user_id, -amount, reason, related_job_id)

    def credit(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason,
        related_job_id: Optional[str] = None,
    ) -> LedgerEntry:
        _require_positive(amount)
        with self._lock:
            user = self._users.get_or_create(user_id)
            user.credits += amount
            self._users.save(user)
            return self._append(user_id, amount, reason, related_job_id)

    def entries_for_job(self, job_id: str) -> List[LedgerEntry]:
        with self._lock:
            return [e for e in self._entries if e.related_job_id == job_id]

    def _append(self, user_id, delta, reason, related_job_id) -> LedgerEntry:
        entry = LedgerEntry(len(self._entries) + 1, user_id, delta, reason.value, related_job_id, datetime.utcnow())
        self._entries.append(entry)
        logger.info(f"[LEDGER] {user_id} {delta:+d} ({reason.value}, job={related_job_id})")
        return entry


_ledger: Optional[BaseCreditLedger] = None


def get_ledger_repository() -> BaseCreditLedger:
    global _ledger
    if _ledger is None:
        from mediaflow.auth.repository import get_user_repository
        from . import is_sqlite_backend

        _ledger = SQLiteCreditLedger() if is_sqlite_backend() else InMemoryCreditLedger(get_user_repository())
    return _ledger


def reset_ledger_repository() -> None:
    """Reset ledger singleton (for testing)."""
    global _ledger
    _ledger = None
