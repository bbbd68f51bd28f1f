"""Runtime configuration for the rewards backend.

All tunables live on ``RewardsConfig``. Values come from the environment
via ``RewardsConfig.from_env()``; anything left unset keeps the default.
Nonsensical values (a zero quota, an empty spin wheel) fail validation at
load time instead of surfacing as runtime faults.
"""

import os
from datetime import timedelta
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import QuotaKind


class RewardsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # rewards
    reward_per_ad: Decimal = Field(default=Decimal("3"), ge=0)
    spin_sectors: list[Decimal] = Field(
        default_factory=lambda: [Decimal(v) for v in ("5", "10", "15", "20", "5")]
    )
    commission_rate: Decimal = Field(default=Decimal("0.05"), ge=0, le=1)
    commission_min_amount: Decimal = Field(default=Decimal("0.01"), ge=0)

    # quotas
    max_ads: int = 100
    max_spins: int = 15
    quota_reset_seconds: int = Field(default=6 * 60 * 60, gt=0)

    # anti-abuse
    min_action_interval_ms: int = Field(default=3000, ge=0)
    token_validity_seconds: int = Field(default=60, gt=0)
    token_grace_seconds: int = Field(default=5, ge=0)
    reaper_interval_seconds: float = Field(default=5.0, gt=0)
    serialize_accounts: bool = False

    # withdrawals
    destination_min_length: int = 5
    destination_max_length: int = 50

    # collaborators
    bot_token: str = ""
    init_data_max_age_seconds: Optional[int] = 24 * 60 * 60
    storage_backend: Literal["memory", "supabase"] = "memory"
    supabase_url: str = ""
    supabase_key: str = ""
    store_timeout_seconds: float = Field(default=10.0, gt=0)
    membership_timeout_seconds: float = Field(default=10.0, gt=0)
    commission_workers: int = Field(default=2, gt=0)
    log_level: str = "INFO"

    @field_validator("max_ads", "max_spins")
    @classmethod
    def _quota_must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("quota maximum must be a positive integer")
        return value

    @field_validator("spin_sectors")
    @classmethod
    def _sectors_not_empty(cls, value: list[Decimal]) -> list[Decimal]:
        if not value:
            raise ValueError("spin wheel needs at least one sector")
        if any(v < 0 for v in value):
            raise ValueError("spin sector rewards must be non-negative")
        return value

    @property
    def quota_reset_interval(self) -> timedelta:
        return timedelta(seconds=self.quota_reset_seconds)

    @property
    def min_action_interval(self) -> timedelta:
        return timedelta(milliseconds=self.min_action_interval_ms)

    @property
    def token_validity(self) -> timedelta:
        return timedelta(seconds=self.token_validity_seconds)

    @property
    def token_grace(self) -> timedelta:
        return timedelta(seconds=self.token_grace_seconds)

    def max_for(self, kind: QuotaKind) -> int:
        return self.max_ads if kind == QuotaKind.ADS else self.max_spins

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "RewardsConfig":
        env = os.environ if environ is None else environ
        mapping = {
            "REWARDS_REWARD_PER_AD": "reward_per_ad",
            "REWARDS_COMMISSION_RATE": "commission_rate",
            "REWARDS_COMMISSION_MIN_AMOUNT": "commission_min_amount",
            "REWARDS_MAX_ADS": "max_ads",
            "REWARDS_MAX_SPINS": "max_spins",
            "REWARDS_QUOTA_RESET_SECONDS": "quota_reset_seconds",
            "REWARDS_MIN_ACTION_INTERVAL_MS": "min_action_interval_ms",
            "REWARDS_TOKEN_VALIDITY_SECONDS": "token_validity_seconds",
            "REWARDS_TOKEN_GRACE_SECONDS": "token_grace_seconds",
            "REWARDS_REAPER_INTERVAL_SECONDS": "reaper_interval_seconds",
            "REWARDS_SERIALIZE_ACCOUNTS": "serialize_accounts",
            "REWARDS_INIT_DATA_MAX_AGE_SECONDS": "init_data_max_age_seconds",
            "REWARDS_STORAGE_BACKEND": "storage_backend",
            "REWARDS_STORE_TIMEOUT_SECONDS": "store_timeout_seconds",
            "REWARDS_MEMBERSHIP_TIMEOUT_SECONDS": "membership_timeout_seconds",
            "REWARDS_COMMISSION_WORKERS": "commission_workers",
            "REWARDS_LOG_LEVEL": "log_level",
            "BOT_TOKEN": "bot_token",
            "SUPABASE_URL": "supabase_url",
            "SUPABASE_KEY": "supabase_key",
        }
        values = {field: env[name] for name, field in mapping.items() if env.get(name) not in (None, "")}
        if env.get("REWARDS_SPIN_SECTORS"):
            values["spin_sectors"] = [s.strip() for s in env["REWARDS_SPIN_SECTORS"].split(",")]
        return cls.model_validate(values)
