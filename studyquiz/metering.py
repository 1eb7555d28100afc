"""Usage metering: free generation quota and paid subscriptions.

Every user starts with ``DEFAULT_FREE_GENERATIONS`` free generations. A paid
plan lifts the quota until its expiry; an expired plan is turned back into
the free tier the next time the record is read, keeping whatever free
generations were left.

Quota is spent after a generation has been persisted, never before, so a
failed request does not cost the user anything.
"""

import calendar
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)

FREE = "free"
MONTHLY = "monthly"
QUARTERLY = "quarterly"
YEARLY = "yearly"
PLAN_MONTHS = {MONTHLY: 1, QUARTERLY: 3, YEARLY: 12}
DEFAULT_FREE_GENERATIONS = 10


class UsageStatus(NamedTuple):
    allowed: bool
    remaining_free: int
    status: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def is_active(record: Dict, now: datetime) -> bool:
    if record.get("subscription_status", FREE) == FREE:
        return False
    expiry = record.get("subscription_expiry")
    return expiry is not None and expiry > now


class MeteringEngine:
    def __init__(self, store, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _check_user_id(user_id: str) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("user_id is required.")
        return user_id.strip()

    def _load(self, user_id: str) -> Dict:
        """Return the user's record, creating or normalizing it as needed."""
        now = self.now()
        record = self.store.get_user(user_id)
        if record is None:
            record = self.store.create_user(user_id, now)
            logger.info("Created entitlement record for user %s", user_id)
            return record

        if record.get("subscription_status", FREE) != FREE and not is_active(record, now):
            self.store.revert_to_free(user_id, now)
            logger.info(
                "Subscription %s for user %s lapsed; reverted to free",
                record.get("subscription_status"),
                user_id,
            )
            record = dict(record, subscription_status=FREE, subscription_expiry=None)
        return record

    def evaluate(self, user_id: str) -> UsageStatus:
        user_id = self._check_user_id(user_id)
        record = self._load(user_id)
        status = record.get("subscription_status", FREE)
        if status != FREE:
            return UsageStatus(True, 0, status)

        remaining = int(record.get("free_generations_remaining") or 0)
        if remaining > 0:
            return UsageStatus(True, remaining, FREE)
        return UsageStatus(False, 0, FREE)

    def describe(self, user_id: str) -> Dict:
        user_id = self._check_user_id(user_id)
        record = self._load(user_id)
        return {
            "user_id": user_id,
            "free_generations_remaining": int(record.get("free_generations_remaining") or 0),
            "subscription_status": record.get("subscription_status") or FREE,
            "subscription_expiry": record.get("subscription_expiry"),
        }

    def consume(self, user_id: str) -> int:
        remaining = self.store.consume_free_generation(self._check_user_id(user_id))
        return remaining if remaining is not None else 0

    def charge(self, user_id: str, usage: UsageStatus) -> Optional[int]:
        """Spend one free generation for a request that was allowed by ``usage``.

        Returns the remaining free count, or ``None`` when the user turned
        out to have nothing left to spend (another request took the last
        unit after ``usage`` was computed).
        """
        if usage.status != FREE:
            return 0
        remaining = self.store.consume_free_generation(self._check_user_id(user_id))
        if remaining is not None:
            return remaining

        current = self.evaluate(user_id)
        if current.allowed and current.status != FREE:
            return 0
        logger.warning("User %s lost the race for their last free generation", user_id)
        return None

    def subscribe(self, user_id: str, plan: str) -> datetime:
        user_id = self._check_user_id(user_id)
        plan = str(plan or "").strip()
        if plan not in PLAN_MONTHS:
            raise ValueError("Invalid plan. Choose monthly, quarterly, or yearly.")

        now = self.now()
        expiry = add_months(now, PLAN_MONTHS[plan])
        if self.store.get_user(user_id) is None:
            self.store.create_user(user_id, now)
        self.store.set_subscription(user_id, plan, expiry)
        logger.info("User %s subscribed to %s until %s", user_id, plan, expiry.isoformat())
        return expiry
