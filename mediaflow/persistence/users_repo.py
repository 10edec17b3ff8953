"""
SQLite User Repository.
"""
import logging
from datetime import datetime
from typing import Optional

from mediaflow.auth.models import User, Plan, STARTING_CREDITS
from mediaflow.auth.repository import BaseUserRepository
from .database import get_connection, transaction
from .ledger_repo import CreditReason

logger = logging.getLogger(__name__)


class SQLiteUserRepository(BaseUserRepository):
    """users table; the credits column is maintained by the ledger."""

    def get(self, user_id: str) -> Optional[User]:
        row = get_connection().execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        return User(
            user_id=row["user_id"],
            plan=Plan(row["plan"]),
            credits=row["credits"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_or_create(self, user_id: str, plan: Plan = Plan.FREE) -> User:
        user = self.get(user_id)
        if user is not None:
            return user

        starting = STARTING_CREDITS[plan]
        now = datetime.utcnow().isoformat()

        with transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO users (user_id, plan, credits, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, plan.value, starting, now, now),
            )
            # rowcount 0: a concurrent request registered the caller first
            if cursor.rowcount == 1 and starting > 0:
                conn.execute(
                    "INSERT INTO credit_ledger (user_id, delta, reason, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, starting, CreditReason.INITIAL.value, now),
                )

        logger.info(f"Registered caller {user_id} (plan={plan.value}, credits={starting})")
        return self.get(user_id)

    def save(self, user: User) -> User:
        user.touch()
        get_connection().execute(
            "UPDATE users SET plan = ?, updated_at = ? WHERE user_id = ?",
            (user.plan.value, user.updated_at.isoformat(), user.user_id),
        )
        return user
