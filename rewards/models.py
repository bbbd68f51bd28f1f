from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class ActionKind(str, Enum):
    WATCH_AD = "watch_ad"
    SPIN = "spin"
    WITHDRAW = "withdraw"


class QuotaKind(str, Enum):
    ADS = "ads"
    SPINS = "spins"


class TaskType(str, Enum):
    JOIN_CHANNEL = "join_channel"
    VISIT = "visit"


class WithdrawalStatus(str, Enum):
    REQUESTED = "requested"


class SkipReason(str, Enum):
    AMOUNT_NEGLIGIBLE = "amount_negligible"
    REFERRER_MISSING = "referrer_missing"
    REFERRER_BANNED = "referrer_banned"
    SELF_REFERRAL = "self_referral"


class RequestType(str, Enum):
    GET_USER_DATA = "getUserData"
    REQUEST_ACTION_ID = "requestActionId"
    WATCH_AD = "watchAd"
    PRE_SPIN = "preSpin"
    SPIN_RESULT = "spinResult"
    GET_TASKS = "getTasks"
    COMPLETE_TASK = "completeTask"
    WITHDRAW = "withdraw"


class UserAccount(BaseModel):
    id: int
    balance: Decimal = Field(default=Decimal("0"), ge=0)
    ads_watched: int = Field(default=0, ge=0)
    spins_used: int = Field(default=0, ge=0)
    ads_limit_reached_at: Optional[datetime] = None
    spins_limit_reached_at: Optional[datetime] = None
    referrer_id: Optional[int] = None
    last_activity: Optional[datetime] = None
    last_ad_watch: Optional[datetime] = None
    last_spin: Optional[datetime] = None
    is_banned: bool = False
    telegram_username: Optional[str] = None
    first_name: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ActionToken(BaseModel):
    id: str
    user_id: int
    kind: ActionKind
    issued_at: datetime
    payload: Optional[dict[str, Any]] = None

    model_config = ConfigDict(frozen=True)


class Task(BaseModel):
    id: int
    name: str
    link: str = ""
    reward: Decimal = Field(ge=0)
    max_users: int = Field(ge=0)
    current_users: int = Field(default=0, ge=0)
    type: TaskType = TaskType.VISIT
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_full(self) -> bool:
        return self.current_users >= self.max_users


class TaskCompletion(BaseModel):
    user_id: int
    task_id: int
    completed_at: datetime


class WithdrawalRequest(BaseModel):
    id: Optional[int] = None
    user_id: int
    destination: str
    amount: Decimal
    status: WithdrawalStatus = WithdrawalStatus.REQUESTED
    requested_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CommissionRecord(BaseModel):
    id: Optional[int] = None
    referrer_id: int
    referee_id: int
    amount: Decimal
    source_amount: Decimal
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class CommissionOutcome(BaseModel):
    applied: bool
    amount: Decimal
    reason: Optional[SkipReason] = None


class QuotaStatus(BaseModel):
    kind: QuotaKind
    used: int
    maximum: int
    remaining: int
    resets_at: Optional[datetime] = None


class ActionRequest(BaseModel):
    type: RequestType
    init_data: Optional[str] = Field(default=None, alias="initData")
    user_id: Optional[int] = None
    action_type: Optional[ActionKind] = None
    action_id: Optional[str] = None
    result_index: Optional[int] = None
    task_id: Optional[int] = None
    amount: Optional[Decimal] = None
    destination: Optional[str] = Field(default=None, alias="binanceId")
    referral_id: Optional[int] = None
    telegram_username: Optional[str] = None
    first_name: Optional[str] = None
    photo_url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "type": "watchAd",
            "initData": "query_id=...&user=%7B%22id%22%3A123%7D&auth_date=1700000000&hash=...",
            "user_id": 123,
            "action_id": "9f86d081884c7d659a2feaa0c55ad015",
        }
    })


class UserDataResponse(BaseModel):
    user: UserAccount
    quotas: list[QuotaStatus]
    withdrawals: list[WithdrawalRequest] = Field(default_factory=list)
    referral_count: int = 0
    is_new: bool
    message: str


class ActionIdResponse(BaseModel):
    action_id: str


class ClaimResponse(BaseModel):
    new_balance: Decimal
    reward: Decimal
    daily_ads_watched: Optional[int] = None
    daily_spins: Optional[int] = None
    sector_index: Optional[int] = None
    message: Optional[str] = None


class TaskView(BaseModel):
    id: int
    name: str
    link: str
    reward: Decimal
    max_users: int
    current_users: int
    type: TaskType
    is_completed: bool
    is_limit_reached: bool


class TasksResponse(BaseModel):
    tasks: list[TaskView]


class WithdrawResponse(BaseModel):
    new_balance: Decimal
    withdrawal_record: Optional[WithdrawalRequest] = None
