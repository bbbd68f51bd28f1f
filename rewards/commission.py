"""Fire-and-forget commission dispatch.

The claiming request never waits on its referrer's commission. Settlement
runs on a worker pool; the outcome is logged and failures are never
retried or reported back to the referee.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from decimal import Decimal
from typing import Optional

from .ledger import RewardLedger
from .models import CommissionOutcome

logger = logging.getLogger(__name__)


class CommissionDispatcher:
    def __init__(self, ledger: RewardLedger, max_workers: int = 2):
        self.ledger = ledger
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="commission")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def dispatch(self, referrer_id: Optional[int], referee_id: int, source_amount: Decimal) -> Optional[Future]:
        if referrer_id is None:
            return None
        try:
            future = self._executor.submit(self.ledger.settle_commission, referrer_id, referee_id, source_amount)
        except RuntimeError:
            logger.exception(f"Commission for referrer {referrer_id} not scheduled: dispatcher is shut down")
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(f, referrer_id, referee_id))
        return future

    def _finished(self, future: Future, referrer_id: int, referee_id: int) -> None:
        with self._lock:
            self._pending.discard(future)
        error = future.exception()
        if error is not None:
            logger.error(
                f"Commission from user {referee_id} to referrer {referrer_id} failed: {error}",
                exc_info=error,
            )
            return
        outcome: CommissionOutcome = future.result()
        if outcome.applied:
            logger.info(f"Commission of {outcome.amount} applied to referrer {referrer_id} (from {referee_id})")
        else:
            logger.info(f"Commission to referrer {referrer_id} skipped: {outcome.reason.value}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight settlements; True when none remain."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
