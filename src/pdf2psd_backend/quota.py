"""
Plan tiers and the admission gate that enforces conversion allowances.

The gate never caches user records: every admission re-reads the user from
the account store, and the only write is the atomic decrement in ``settle``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:
    from .job_store import JobRecord
    from .user_store import UserRecord, UserStore

logger = logging.getLogger(__name__)

FREE_QUOTA_EXHAUSTED = "free_quota_exhausted"
PAID_QUOTA_EXHAUSTED = "paid_quota_exhausted"


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @property
    def allotment(self) -> Optional[int]:
        """Conversions granted when the plan is (re)applied; None means unlimited."""
        return PLAN_ALLOTMENTS[self]

    @property
    def is_paid(self) -> bool:
        return self in (PlanTier.BASIC, PlanTier.PRO, PlanTier.PREMIUM)

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["PlanTier"]:
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            return None


_RANKS: Dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.BASIC: 1,
    PlanTier.PRO: 2,
    PlanTier.PREMIUM: 3,
    PlanTier.ENTERPRISE: 4,
}

PLAN_ALLOTMENTS: Dict[PlanTier, Optional[int]] = {
    PlanTier.FREE: 1,
    PlanTier.BASIC: 20,
    PlanTier.PRO: 50,
    PlanTier.PREMIUM: 200,
    PlanTier.ENTERPRISE: None,
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    plan: str
    conversions_left: int
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        if self.reason == FREE_QUOTA_EXHAUSTED:
            return "You have used your free conversion. Upgrade to a paid plan to continue."
        if self.reason == PAID_QUOTA_EXHAUSTED:
            return f"Your {self.plan} plan has no conversions left. Upgrade to a higher plan to continue."
        return "Conversion allowed"


class QuotaGate:
    """
    Admission control for conversions, backed by the user account store.

    Policy:
        - free plan with fewer than one conversion left is denied
          (``free_quota_exhausted``)
        - any paid plan with fewer than one conversion left is denied
          (``paid_quota_exhausted``)
        - enterprise and unrecognized plans are always admitted
        - jobs already admitted but not yet settled count against the
          remaining allowance

    Charging happens in ``settle`` after a successful conversion only.
    """

    def __init__(self, users: "UserStore") -> None:
        self._users = users

    def evaluate(self, user: "UserRecord", in_flight: int = 0) -> QuotaDecision:
        """Decide admission, counting ``in_flight`` admitted-but-unsettled jobs as already spent."""
        tier = PlanTier.parse(user.plan)
        left = user.conversions_left
        available = left - in_flight
        if tier is PlanTier.FREE and available < 1:
            return QuotaDecision(False, user.plan, left, FREE_QUOTA_EXHAUSTED)
        if tier is not None and tier.is_paid and available < 1:
            return QuotaDecision(False, user.plan, left, PAID_QUOTA_EXHAUSTED)
        return QuotaDecision(True, user.plan, left)

    async def admit(
        self,
        user: "UserRecord",
        job: "JobRecord",
        in_flight: Callable[[str], int] = lambda user_id: 0,
    ) -> QuotaDecision:
        """
        Re-read the user and evaluate admission for ``job``.

        ``in_flight`` is called after the re-read, with no suspension point
        between it and the return, so a caller that records the admission
        before its next ``await`` cannot admit two jobs against one allowance.
        """
        current = await asyncio.to_thread(self._users.get_user, user.id)
        if current is None:
            current = user
        reserved = in_flight(current.id)
        decision = self.evaluate(current, reserved)
        if decision.allowed:
            logger.info(
                f"Admitted job {job.id} for user {current.id} "
                f"(plan={current.plan}, left={current.conversions_left}, in_flight={reserved})"
            )
        else:
            logger.info(f"Denied job {job.id} for user {current.id}: {decision.reason} (in_flight={reserved})")
        return decision

    async def settle(self, user: "UserRecord") -> int:
        """Charge one conversion; returns the remaining allowance (floored at 0)."""
        remaining = await asyncio.to_thread(self._users.decrement_conversions, user.id)
        logger.info(f"Settled one conversion for user {user.id}; {remaining} left")
        return remaining
