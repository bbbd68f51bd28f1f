"""
Rewards Ledger with Anti-Abuse Guards

This module provides:
- Single-use, short-lived action tokens (prepare → commit)
- Per-user cooldown between mutating actions
- Ad and spin quotas with limit-triggered reset
- Balance credits/debits and fire-and-forget referral commissions
- Task claims that pay out at most once per user
"""

from .config import RewardsConfig
from .errors import ErrorCode, RewardsError
from .ledger import RewardLedger
from .models import (
    ActionKind,
    QuotaKind,
    UserAccount,
    Task,
    WithdrawalRequest,
    CommissionRecord,
)
from .quota import QuotaTracker
from .ratelimit import RateLimiter
from .service import RewardsService
from .tokens import ActionTokenRegistry

__all__ = [
    "RewardsConfig",
    "ErrorCode",
    "RewardsError",
    "RewardLedger",
    "ActionKind",
    "QuotaKind",
    "UserAccount",
    "Task",
    "WithdrawalRequest",
    "CommissionRecord",
    "QuotaTracker",
    "RateLimiter",
    "RewardsService",
    "ActionTokenRegistry",
]
