"""
Media Job Repository.
Durable MediaJob records so cancellation, crash recovery and settlement
survive the worker that runs the pipeline.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Optional, Dict, List, Set

from mediaflow.pipeline.models import MediaJob, TERMINAL_STATUSES
from .database import get_connection, transaction

logger = logging.getLogger(__name__)


class BaseMediaJobRepository(ABC):
    """Abstract base class for media job repositories."""

    @abstractmethod
    def create(self, job: MediaJob) -> MediaJob:
        """Persist a new job."""
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[MediaJob]:
        """Get job snapshot by ID."""
        pass

    @abstractmethod
    def save(self, job: MediaJob) -> MediaJob:
        """Persist the latest snapshot. Never clears a cancel request."""
        pass

    @abstractmethod
    def request_cancel(self, job_id: str) -> bool:
        """Set the durable cancel flag. Returns False for unknown jobs."""
        pass

    @abstractmethod
    def is_cancel_requested(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int = 50) -> List[MediaJob]:
        pass

    @abstractmethod
    def list_stale(self, updated_before: datetime) -> List[MediaJob]:
        """Non-terminal jobs not updated since the cutoff."""
        pass

    @abstractmethod
    def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[MediaJob]:
        pass


class InMemoryMediaJobRepository(BaseMediaJobRepository):
    """
    In-memory media job repository.
    Thread-safe, suitable for development/testing.
    """

    def __init__(self):
        self._jobs: Dict[str, MediaJob] = {}
        self._cancelled: Set[str] = set()
        self._lock = Lock()
        logger.info("MediaJobRepository initialized (in-memory)")

    def create(self, job: MediaJob) -> MediaJob:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job already exists: {job.id}")
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: str) -> Optional[MediaJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            snapshot = job.model_copy(deep=True)
            snapshot.cancel_requested = snapshot.cancel_requested or job_id in self._cancelled
            return snapshot

    def save(self, job: MediaJob) -> MediaJob:
        with self._lock:
            job.updated_at = datetime.utcnow()
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                return False
            self._cancelled.add(job_id)
            return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def list_for_user(self, user_id: str, limit: int = 50) -> List[MediaJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    def list_stale(self, updated_before: datetime) -> List[MediaJob]:
        with self._lock:
            return [
                j.model_copy(deep=True)
                for j in self._jobs.values()
                if j.status not in TERMINAL_STATUSES and j.updated_at < updated_before
            ]

    def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[MediaJob]:
        with self._lock:
            for job in self._jobs.values():
                if job.user_id == user_id and job.idempotency_key == key:
                    return job.model_copy(deep=True)
        return None


class SQLiteMediaJobRepository(BaseMediaJobRepository):
    """
    SQLite-backed media job repository.
    The cancel flag lives in its own column so a worker saving a snapshot
    can never overwrite a cancel written by the API.
    """

    def create(self, job: MediaJob) -> MediaJob:
        conn = get_connection()
        with transaction():
            conn.execute(
                """
                INSERT INTO media_jobs
                    (job_id, user_id, status, idempotency_key, cancel_requested, snapshot, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    job.id,
                    job.user_id,
                    job.status.value,
                    job.idempotency_key,
                    job.model_dump_json(),
                    job.created_at.isoformat(),
                    job.updated_at.isoformat(),
                )
            )
        logger.info(f"Media job created: {job.id} (user={job.user_id})")
        return job

    def get(self, job_id: str) -> Optional[MediaJob]:
        conn = get_connection()
        row = conn.execute(
            "SELECT snapshot, cancel_requested FROM media_jobs WHERE job_id = ?",
            (job_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def save(self, job: MediaJob) -> MediaJob:
        conn = get_connection()
        job.updated_at = datetime.utcnow()
        conn.execute(
            """
            UPDATE media_jobs
            SET status = ?, snapshot = ?, updated_at = ?
            WHERE job_id = ?
            """,
            (job.status.value, job.model_dump_json(), job.updated_at.isoformat(), job.id)
        )
        return job

    def request_cancel(self, job_id: str) -> bool:
        conn = get_connection()
        cursor = conn.execute(
            "UPDATE media_jobs SET cancel_requested = 1 WHERE job_id = ?",
            (job_id,)
        )
        return cursor.rowcount > 0

    def is_cancel_requested(self, job_id: str) -> bool:
        conn = get_connection()
        row = conn.execute(
            "SELECT cancel_requested FROM media_jobs WHERE job_id = ?",
            (job_id,)
        ).fetchone()
        return bool(row and row["cancel_requested"])

    def list_for_user(self, user_id: str, limit: int = 50) -> List[MediaJob]:
        conn = get_connection()
        rows = conn.execute(
            """
            SELECT snapshot, cancel_requested FROM media_jobs
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, limit)
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_stale(self, updated_before: datetime) -> List[MediaJob]:
        conn = get_connection()
        placeholders = ",".join("?" for _ in TERMINAL_STATUSES)
        rows = conn.execute(
            f"""
            SELECT snapshot, cancel_requested FROM media_jobs
            WHERE status NOT IN ({placeholders}) AND updated_at < ?
            """,
            (*[s.value for s in TERMINAL_STATUSES], updated_before.isoformat())
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[MediaJob]:
        conn = get_connection()
        row = conn.execute(
            """
            SELECT snapshot, cancel_requested FROM media_jobs
            WHERE user_id = ? AND idempotency_key = ?
            """,
            (user_id, key)
        ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def _row_to_job(self, row) -> MediaJob:
        job = MediaJob.model_validate_json(row["snapshot"])
        job.cancel_requested = job.cancel_requested or bool(row["cancel_requested"])
        return job


_repository: Optional[BaseMediaJobRepository] = None


def get_media_job_repository() -> BaseMediaJobRepository:
    """
    Get or create media job repository singleton.
    Backend selected via STORAGE_BACKEND environment variable.
    """
    global _repository

    if _repository is None:
        from . import is_sqlite_backend

        if is_sqlite_backend():
            _repository = SQLiteMediaJobRepository()
            logger.info("Using SQLite media job repository")
        else:
            _repository = InMemoryMediaJobRepository()
            logger.info("Using in-memory media job repository")

    return _repository


def reset_media_job_repository() -> None:
    """Reset repository singleton (for testing)."""
    global _repository
    _repository = None
