"""Per-user cooldown between mutating actions.

Front-line throttling only: it narrows the window for racing requests but
is no replacement for single-use action tokens. Always check the cooldown
before consuming a token, so a throttled request keeps its token.
"""

import logging
import math
from datetime import timedelta

from .clock import Clock, ensure_aware, utc_now
from .errors import RateLimitedError
from .models import UserAccount

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, min_interval: timedelta = timedelta(milliseconds=3000), clock: Clock = utc_now):
        self.min_interval = min_interval
        self.clock = clock

    def remaining_ms(self, account: UserAccount) -> int:
        if account.last_activity is None:
            return 0
        elapsed = self.clock() - ensure_aware(account.last_activity)
        if elapsed >= self.min_interval:
            return 0
        return max(1, math.ceil((self.min_interval - elapsed) / timedelta(milliseconds=1)))

    def check_cooldown(self, account: UserAccount) -> None:
        remaining = self.remaining_ms(account)
        if remaining:
            logger.info(f"User {account.id} throttled for another {remaining} ms")
            raise RateLimitedError("Too many requests. Please wait a moment.", retry_after_ms=remaining)
