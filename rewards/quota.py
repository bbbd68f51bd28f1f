"""Per-period ad and spin quotas with limit-triggered reset.

The reset clock only starts once a user actually exhausts a quota: the
moment the count reaches its maximum is stamped as the lockout time, and
the count returns to zero once the reset interval has passed since then.
A quota below its maximum never resets, however long ago it was used.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from .clock import Clock, ensure_aware, utc_now
from .errors import NotFoundError, QuotaExceededError
from .models import QuotaKind, QuotaStatus, UserAccount
from .storage import RecordStore

logger = logging.getLogger(__name__)

COUNT_FIELDS = {QuotaKind.ADS: "ads_watched", QuotaKind.SPINS: "spins_used"}
LOCKOUT_FIELDS = {QuotaKind.ADS: "ads_limit_reached_at", QuotaKind.SPINS: "spins_limit_reached_at"}
LIMIT_MESSAGES = {
    QuotaKind.ADS: "Daily ad limit reached. Please wait for the reset.",
    QuotaKind.SPINS: "Daily spin limit reached. Please wait for the reset.",
}


class QuotaTracker:
    def __init__(
        self,
        store: RecordStore,
        limits: dict[QuotaKind, int],
        reset_interval: timedelta = timedelta(hours=6),
        clock: Clock = utc_now,
    ):
        for kind, maximum in limits.items():
            if maximum <= 0:
                raise ValueError(f"{kind.value} quota maximum must be positive, got {maximum}")
        self.store = store
        self.limits = limits
        self.reset_interval = reset_interval
        self.clock = clock

    def _counters(self, account: UserAccount, kind: QuotaKind) -> tuple[int, Optional[datetime]]:
        count = getattr(account, COUNT_FIELDS[kind])
        locked_at = getattr(account, LOCKOUT_FIELDS[kind])
        return count, ensure_aware(locked_at) if locked_at else None

    def _settle(self, account: UserAccount, kind: QuotaKind, now: datetime) -> dict:
        """Changes that bring one quota up to date at ``now``."""
        count, locked_at = self._counters(account, kind)
        if count < self.limits[kind]:
            return {}
        if locked_at is None:
            # exhausted without a stamp: start the lockout now
            return {LOCKOUT_FIELDS[kind]: now}
        if now - locked_at > self.reset_interval:
            return {COUNT_FIELDS[kind]: 0, LOCKOUT_FIELDS[kind]: None}
        return {}

    def refresh(self, account: UserAccount) -> dict:
        now = self.clock()
        changes = {}
        for kind in self.limits:
            changes.update(self._settle(account, kind, now))
        if changes:
            self.store.update_user(account.id, changes)
            logger.info(f"Quota state refreshed for user {account.id}: {sorted(changes)}")
        return changes

    def _retry_after(self, locked_at: Optional[datetime], now: datetime) -> Optional[int]:
        if locked_at is None:
            return None
        left = (locked_at + self.reset_interval - now).total_seconds()
        return max(0, math.ceil(left))

    def ensure_available(self, account: UserAccount, kind: QuotaKind) -> None:
        """Reject when the quota is exhausted, without consuming a slot."""
        now = self.clock()
        changes = self._settle(account, kind, now)
        count = changes.get(COUNT_FIELDS[kind], getattr(account, COUNT_FIELDS[kind]))
        if count >= self.limits[kind]:
            locked_at = changes.get(LOCKOUT_FIELDS[kind]) or self._counters(account, kind)[1]
            raise QuotaExceededError(LIMIT_MESSAGES[kind], self._retry_after(locked_at, now))

    def check_and_increment(self, user_id: int, kind: QuotaKind) -> int:
        account = self.store.get_user(user_id)
        if account is None:
            raise NotFoundError("User not found.")

        now = self.clock()
        maximum = self.limits[kind]
        changes = self._settle(account, kind, now)
        count = changes.get(COUNT_FIELDS[kind], getattr(account, COUNT_FIELDS[kind]))

        if count >= maximum:
            if changes:
                self.store.update_user(user_id, changes)
            locked_at = changes.get(LOCKOUT_FIELDS[kind]) or self._counters(account, kind)[1]
            logger.info(f"User {user_id} hit the {kind.value} quota ({count}/{maximum})")
            raise QuotaExceededError(LIMIT_MESSAGES[kind], self._retry_after(locked_at, now))

        new_count = count + 1
        changes[COUNT_FIELDS[kind]] = new_count
        if new_count >= maximum:
            changes[LOCKOUT_FIELDS[kind]] = now
        self.store.update_user(user_id, changes)
        return new_count

    def status(self, account: UserAccount, kind: QuotaKind) -> QuotaStatus:
        count, locked_at = self._counters(account, kind)
        maximum = self.limits[kind]
        return QuotaStatus(
            kind=kind,
            used=count,
            maximum=maximum,
            remaining=max(0, maximum - count),
            resets_at=locked_at + self.reset_interval if locked_at and count >= maximum else None,
        )
