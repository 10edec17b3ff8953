"""
Persistence Module.
Provides SQLite-backed storage for users, media jobs, and credit ledger.
"""
import os
import logging

from .database import get_connection, transaction, close_connection, migrate
from .users_repo import SQLiteUserRepository
from .ledger_repo import (
    BaseCreditLedger,
    SQLiteCreditLedger,
    InMemoryCreditLedger,
    CreditReason,
    LedgerEntry,
    get_ledger_repository,
    reset_ledger_repository,
)
from .media_jobs_repo import (
    BaseMediaJobRepository,
    InMemoryMediaJobRepository,
    SQLiteMediaJobRepository,
    get_media_job_repository,
    reset_media_job_repository,
)
from .settlement_repo import (
    SettlementIssue,
    get_settlement_issue_repository,
    reset_settlement_issue_repository,
)

logger = logging.getLogger(__name__)

STORAGE_BACKEND_ENV = "STORAGE_BACKEND"
STORAGE_BACKEND_SQLITE = "sqlite"
STORAGE_BACKEND_MEMORY = "memory"


def get_storage_backend() -> str:
    """Get storage backend from environment."""
    backend = os.environ.get(STORAGE_BACKEND_ENV, STORAGE_BACKEND_SQLITE)
    return backend.lower()


def is_sqlite_backend() -> bool:
    """Check if using SQLite backend."""
    return get_storage_backend() == STORAGE_BACKEND_SQLITE


__all__ = [
    "get_connection",
    "transaction",
    "close_connection",
    "migrate",
    "SQLiteUserRepository",
    "BaseCreditLedger",
    "SQLiteCreditLedger",
    "InMemoryCreditLedger",
    "CreditReason",
    "LedgerEntry",
    "get_ledger_repository",
    "reset_ledger_repository",
    "BaseMediaJobRepository",
    "InMemoryMediaJobRepository",
    "SQLiteMediaJobRepository",
    "get_media_job_repository",
    "reset_media_job_repository",
    "SettlementIssue",
    "get_settlement_issue_repository",
    "reset_settlement_issue_repository",
    "get_storage_backend",
    "is_sqlite_backend",
    "STORAGE_BACKEND_SQLITE",
    "STORAGE_BACKEND_MEMORY",
]
