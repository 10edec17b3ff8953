"""
Cost Meter.
Quotes a job up front and settles it exactly once after it finishes.
All amounts are integer credits.
"""
import os
import math
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, Field

from mediaflow.credits.service import CreditService, get_credit_service
from mediaflow.persistence import CreditReason
from .errors import SettlementInconsistency
from .models import MediaJob, StageKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageRate:
    """Flat surcharge plus an optional per-started-minute increment."""
    flat: int
    per_minute: int = 0

    def price(self, minutes: int) -> int:
        return self.flat + self.per_minute * minutes


DEFAULT_STAGE_RATES: Dict[StageKind, StageRate] = {
    StageKind.FLIP: StageRate(1),
    StageKind.ASPECT_CROP: StageRate(1),
    StageKind.COLOR_GRADE: StageRate(1),
    StageKind.UNIQUENESS: StageRate(1),
    StageKind.WATERMARK: StageRate(1),
    StageKind.LOGO_OVERLAY: StageRate(1),
    StageKind.CHARACTER_OVERLAY: StageRate(2),
    StageKind.VOLUME: StageRate(1),
    StageKind.SUBTITLES: StageRate(2),
    StageKind.TEXT_TO_SPEECH: StageRate(3),
    StageKind.OBJECT_REMOVAL: StageRate(2, per_minute=1),
    StageKind.FACE_SUBSTITUTION: StageRate(5, per_minute=1),
    StageKind.SONG_GENERATION: StageRate(8),
    StageKind.INTRO: StageRate(1),
    StageKind.OUTRO: StageRate(1),
}


class CostConfig:
    """
    Pricing loaded from environment variables.
    COST_BASE_PER_MINUTE sets the base rate; COST_<KIND>_FLAT and
    COST_<KIND>_PER_MINUTE override a stage rate.
    """

    def __init__(self):
        self.base_per_minute: int = int(os.getenv("COST_BASE_PER_MINUTE", "4"))
        self.stage_rates: Dict[StageKind, StageRate] = {}

        for kind, default in DEFAULT_STAGE_RATES.items():
            prefix = f"COST_{kind.value.upper()}"
            self.stage_rates[kind] = StageRate(
                flat=int(os.getenv(f"{prefix}_FLAT", str(default.flat))),
                per_minute=int(os.getenv(f"{prefix}_PER_MINUTE", str(default.per_minute))),
            )

        logger.info(f"CostConfig loaded: base={self.base_per_minute}/min, {len(self.stage_rates)} stage rates")

    def reload(self) -> None:
        """Reload configuration from environment."""
        self.__init__()

    def rate_for(self, kind: StageKind) -> StageRate:
        return self.stage_rates.get(kind, StageRate(0))


class CostEstimate(BaseModel):
    """Quoted price for a job."""
    total: int = Field(..., ge=0)
    base: int = Field(..., ge=0)
    minutes: int = Field(..., ge=1, description="Started minutes of source media")
    breakdown: Dict[str, int] = Field(default_factory=dict)


def billable_minutes(duration_seconds: float) -> int:
    """Started minutes, at least one."""
    return max(1, math.ceil(round(duration_seconds / 60.0, 9)))


class CostMeter:
    """
    Estimate and settlement.
    Settlement is a single ledger debit guarded by the job's settled flag
    and by a ledger lookup on the job id.
    """

    def __init__(
        self,
        cost_config: Optional[CostConfig] = None,
        credit_service: Optional[CreditService] = None,
    ):
        self.config = cost_config or CostConfig()
        self._credits = credit_service

    @property
    def credits(self) -> CreditService:
        if self._credits is None:
            self._credits = get_credit_service()
        return self._credits

    def estimate(self, stages: Iterable[StageKind], duration_seconds: float) -> CostEstimate:
        """Base rate per started minute plus each stage's surcharge."""
        minutes = billable_minutes(duration_seconds)
        base = self.config.base_per_minute * minutes
        breakdown = {"base": base}
        for kind in stages:
            breakdown[kind.value] = self.config.rate_for(kind).price(minutes)

        return CostEstimate(
            total=sum(breakdown.values()),
            base=base,
            minutes=minutes,
            breakdown=breakdown,
        )

    def charge_for(self, job: MediaJob, completed_stages: Iterable[StageKind]) -> int:
        """Base plus successful stages only, never above the quote."""
        duration = job.duration_seconds or 0.0
        if duration <= 0:
            return 0
        completed = [k for k in completed_stages if k in job.selected_stages]
        amount = self.estimate(completed, duration).total
        return min(amount, job.cost_estimate)

    def settle(
        self,
        job: MediaJob,
        completed_stages: Iterable[StageKind],
        delivered: bool = True,
    ) -> int:
        """
        Debit the caller once and record the charge on the job.
        A second call returns the recorded charge without touching the ledger.

        Raises:
            SettlementInconsistency: The debit was refused
        """
        if job.settled:
            return job.cost_charged

        amount = self.charge_for(job, completed_stages) if delivered else 0

        if amount > 0:
            if self.credits.has_debit_for_job(job.id):
                # The job record follows the ledger
                amount = self.credits.charged_for_job(job.id)
                logger.info(f"[SETTLEMENT] Job {job.id} already debited {amount}, not charging again")
            else:
                result = self.credits.debit(
                    user_id=job.user_id,
                    amount=amount,
                    reason=CreditReason.SETTLEMENT,
                    related_job_id=job.id,
                )
                if not result.success:
                    raise SettlementInconsistency(job.id, amount, f"ledger refused debit (balance {result.new_balance})")

        job.cost_charged = amount
        job.settled = True
        logger.info(f"[SETTLEMENT] Job {job.id} charged {amount} of {job.cost_estimate} quoted")
        return amount
