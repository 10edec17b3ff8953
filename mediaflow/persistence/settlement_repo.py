"""
Settlement Issue Repository.
Operator-visible record of jobs whose artifact exists but whose debit failed.
"""
import logging
from datetime import datetime
from dataclasses import dataclass
from threading import Lock
from typing import Optional, List

from .database import get_connection

logger = logging.getLogger(__name__)


@dataclass
class SettlementIssue:
    """One unresolved (or resolved) settlement inconsistency."""
    id: int
    job_id: str
    user_id: str
    amount: int
    held_output_ref: Optional[str]
    message: str
    resolved: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None


class InMemorySettlementIssueRepository:
    """In-memory issue log."""

    def __init__(self):
        self._issues: List[SettlementIssue] = []
        self._lock = Lock()

    def record(
        self,
        job_id: str,
        user_id: str,
        amount: int,
        held_output_ref: Optional[str],
        message: str,
    ) -> SettlementIssue:
        with self._lock:
            issue = SettlementIssue(
                id=len(self._issues) + 1,
                job_id=job_id,
                user_id=user_id,
                amount=amount,
                held_output_ref=held_output_ref,
                message=message,
                resolved=False,
                created_at=datetime.utcnow(),
            )
            self._issues.append(issue)
        logger.error(f"[SETTLEMENT] Issue recorded for job {job_id}: {message}")
        return issue

    def list_open(self) -> List[SettlementIssue]:
        with self._lock:
            return [i for i in self._issues if not i.resolved]

    def get_open_for_job(self, job_id: str) -> Optional[SettlementIssue]:
        with self._lock:
            for issue in self._issues:
                if issue.job_id == job_id and not issue.resolved:
                    return issue
        return None

    def mark_resolved(self, job_id: str) -> None:
        with self._lock:
            for issue in self._issues:
                if issue.job_id == job_id and not issue.resolved:
                    issue.resolved = True
                    issue.resolved_at = datetime.utcnow()


class SQLiteSettlementIssueRepository:
    """SQLite-backed issue log."""

    def record(
        self,
        job_id: str,
        user_id: str,
        amount: int,
        held_output_ref: Optional[str],
        message: str,
    ) -> SettlementIssue:
        conn = get_connection()
        now = datetime.utcnow().isoformat()
        cursor = conn.execute(
            """
            INSERT INTO settlement_issues (job_id, user_id, amount, held_output_ref, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, user_id, amount, held_output_ref, message, now)
        )
        logger.error(f"[SETTLEMENT] Issue recorded for job {job_id}: {message}")
        return SettlementIssue(
            id=cursor.lastrowid,
            job_id=job_id,
            user_id=user_id,
            amount=amount,
            held_output_ref=held_output_ref,
            message=message,
            resolved=False,
            created_at=datetime.fromisoformat(now),
        )

    def list_open(self) -> List[SettlementIssue]:
        conn = get_connection()
        rows = conn.execute(
            "SELECT * FROM settlement_issues WHERE resolved = 0 ORDER BY created_at ASC"
        ).fetchall()
        return [self._row_to_issue(row) for row in rows]

    def get_open_for_job(self, job_id: str) -> Optional[SettlementIssue]:
        conn = get_connection()
        row = conn.execute(
            "SELECT * FROM settlement_issues WHERE job_id = ? AND resolved = 0",
            (job_id,)
        ).fetchone()
        return self._row_to_issue(row) if row else None

    def mark_resolved(self, job_id: str) -> None:
        conn = get_connection()
        conn.execute(
            """
            UPDATE settlement_issues
            SET resolved = 1, resolved_at = ?
            WHERE job_id = ? AND resolved = 0
            """,
            (datetime.utcnow().isoformat(), job_id)
        )

    def _row_to_issue(self, row) -> SettlementIssue:
        return SettlementIssue(
            id=row["id"],
            job_id=row["job_id"],
            user_id=row["user_id"],
            amount=row["amount"],
            held_output_ref=row["held_output_ref"],
            message=row["message"],
            resolved=bool(row["resolved"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None,
        )


_repository = None


def get_settlement_issue_repository():
    """Get or create the issue repository for the active backend."""
    global _repository
    if _repository is None:
        from . import is_sqlite_backend

        if is_sqlite_backend():
            _repository = SQLiteSettlementIssueRepository()
        else:
            _repository = InMemorySettlementIssueRepository()
    return _repository


def reset_settlement_issue_repository() -> None:
    """Reset repository singleton (for testing)."""
    global _repository
    _repository = None
