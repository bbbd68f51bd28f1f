"""Balance mutations and referral commission settlement.

Every mutation re-reads the account and re-checks the ban flag right before
writing; a caller's earlier read is never trusted for the balance. The
store offers no transactions, so two concurrent debits can still race;
``AccountLocks`` narrows that window when enabled.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from .clock import Clock, utc_now
from .errors import BannedError, InsufficientBalanceError, InvalidInputError, NotFoundError, StoreError
from .locks import AccountLocks
from .models import CommissionOutcome, CommissionRecord, SkipReason, UserAccount
from .storage import RecordStore

logger = logging.getLogger(__name__)


class RewardLedger:
    def __init__(
        self,
        store: RecordStore,
        commission_rate: Decimal = Decimal("0.05"),
        commission_min_amount: Decimal = Decimal("0.01"),
        clock: Clock = utc_now,
        locks: Optional[AccountLocks] = None,
    ):
        self.store = store
        self.locks = locks or AccountLocks(enabled=False)
        self.commission_rate = commission_rate
        self.commission_min_amount = commission_min_amount
        self.clock = clock

    def _load_active(self, user_id: int) -> UserAccount:
        account = self.store.get_user(user_id)
        if account is None:
            raise NotFoundError("User not found.")
        if account.is_banned:
            raise BannedError("User is banned.")
        return account

    def apply_reward(self, user_id: int, amount: Decimal, **fields: Any) -> Decimal:
        """Credit ``amount`` and refresh last activity. Extra ``fields`` ride along in the same write."""
        if amount < 0:
            raise InvalidInputError("Reward amount must not be negative.")
        account = self._load_active(user_id)
        new_balance = account.balance + amount
        self.store.update_user(user_id, {
            **fields,
            "balance": new_balance,
            "last_activity": self.clock(),
        })
        logger.info(f"Credited {amount} to user {user_id}, balance now {new_balance}")
        return new_balance

    def apply_debit(self, user_id: int, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise InvalidInputError("Debit amount must be positive.")
        account = self._load_active(user_id)
        if amount > account.balance:
            raise InsufficientBalanceError("Insufficient balance.")
        new_balance = account.balance - amount
        self.store.update_user(user_id, {
            "balance": new_balance,
            "last_activity": self.clock(),
        })
        logger.info(f"Debited {amount} from user {user_id}, balance now {new_balance}")
        return new_balance

    def commission_for(self, source_amount: Decimal) -> Decimal:
        return source_amount * self.commission_rate

    def settle_commission(self, referrer_id: int, referee_id: int, source_amount: Decimal) -> CommissionOutcome:
        amount = self.commission_for(source_amount)

        if referrer_id == referee_id:
            return CommissionOutcome(applied=False, amount=amount, reason=SkipReason.SELF_REFERRAL)
        if amount < self.commission_min_amount or amount <= 0:
            return CommissionOutcome(applied=False, amount=amount, reason=SkipReason.AMOUNT_NEGLIGIBLE)

        with self.locks.hold(referrer_id):
            referrer = self.store.get_user(referrer_id)
            if referrer is None:
                return CommissionOutcome(applied=False, amount=amount, reason=SkipReason.REFERRER_MISSING)
            if referrer.is_banned:
                return CommissionOutcome(applied=False, amount=amount, reason=SkipReason.REFERRER_BANNED)

            # passive credit: the referrer's own cooldown is left untouched
            self.store.update_user(referrer_id, {"balance": referrer.balance + amount})

        try:
            self.store.insert_commission(CommissionRecord(
                referrer_id=referrer_id,
                referee_id=referee_id,
                amount=amount,
                source_amount=source_amount,
                created_at=self.clock(),
            ))
        except StoreError:
            logger.exception(f"Commission audit record failed for referrer {referrer_id} (credit stands)")

        return CommissionOutcome(applied=True, amount=amount)
