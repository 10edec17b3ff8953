"""
Caller and plan models.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Credits granted the first time a caller is seen. Enterprise is not metered.
STARTING_CREDITS = {
    Plan.FREE: 20,
    Plan.PRO: 300,
    Plan.ENTERPRISE: 0,
}


class User(BaseModel):
    """
    A caller known to the pipeline.

    Identity is asserted by the gateway; ``credits`` mirrors the ledger
    balance and is only written by the ledger.
    """
    user_id: str = Field(..., min_length=1)
    plan: Plan = Field(default=Plan.FREE)
    credits: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_metered(self) -> bool:
        return self.plan != Plan.ENTERPRISE

    def can_afford(self, amount: int) -> bool:
        """Whether the balance covers a quoted amount."""
        return not self.is_metered or self.credits >= amount

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()
