"""
Credit Service.
The balance/ledger boundary used by the pipeline: balance checks at
admission and the single settlement debit per job.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from mediaflow.auth.models import User
from mediaflow.auth.repository import get_user_repository
from mediaflow.persistence import CreditReason, get_ledger_repository

from .exceptions import InsufficientBalance

logger = logging.getLogger(__name__)

UNLIMITED_BALANCE = -1


@dataclass
class DebitResult:
    success: bool
    new_balance: int


class CreditService:
    """Reads balances from the user cache and moves them through the ledger."""

    def __init__(self):
        self._users = get_user_repository()
        self._ledger = get_ledger_repository()

    def check_credits(self, user: User, required: int = 1) -> bool:
        return user.can_afford(required)

    def ensure_balance(self, user: User, required: int) -> None:
        """
        Admission check against a quote.

        Raises:
            InsufficientBalance: Balance does not cover ``required``
        """
        if not user.can_afford(required):
            logger.warning(f"[CREDITS] {user.user_id} cannot cover {required} (has {user.credits})")
            raise InsufficientBalance(user.user_id, required=required, available=user.credits)

    def debit(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason = CreditReason.SETTLEMENT,
        related_job_id: Optional[str] = None,
    ) -> DebitResult:
        """Debit atomically. Enterprise callers are never metered."""
        user = self._users.get_or_create(user_id)
        if not user.is_metered:
            logger.info(f"[CREDITS] {user_id} is not metered, skipping debit of {amount}")
            return DebitResult(success=True, new_balance=UNLIMITED_BALANCE)

        entry = self._ledger.debit_if_covered(user_id, amount, reason, related_job_id)
        return DebitResult(success=entry is not None, new_balance=self.get_balance(user_id))

    def has_debit_for_job(self, job_id: str) -> bool:
        """Whether a settlement debit was already recorded for the job."""
        return any(entry.is_settlement_debit for entry in self._ledger.entries_for_job(job_id))

    def charged_for_job(self, job_id: str) -> int:
        """Credits the ledger already holds as settlement for the job."""
        return sum(-entry.delta for entry in self._ledger.entries_for_job(job_id) if entry.is_settlement_debit)

    def add_credits(
        self,
        user_id: str,
        amount: int,
        reason: CreditReason = CreditReason.ADMIN,
    ) -> User:
        self._users.get_or_create(user_id)
        self._ledger.credit(user_id, amount, reason)
        user = self._users.get(user_id)
        logger.info(f"[CREDITS] {user_id} +{amount}, balance={user.credits}")
        return user

    def get_balance(self, user_id: str) -> int:
        """Current balance; UNLIMITED_BALANCE for unmetered callers, 0 if unknown."""
        user = self._users.get(user_id)
        if user is None:
            return 0
        return user.credits if user.is_metered else UNLIMITED_BALANCE


_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    global _service
    if _service is None:
        _service = CreditService()
    return _service


def reset_credit_service() -> None:
    """Reset credit service singleton (for testing)."""
    global _service
    _service = None
