import functools
import logging
import secrets
from decimal import Decimal
from typing import Any, Callable, Optional

from .clock import Clock, utc_now
from .commission import CommissionDispatcher
from .config import RewardsConfig
from .errors import (
    AlreadyClaimedError,
    BannedError,
    CapacityExceededError,
    DuplicateRecordError,
    InvalidInputError,
    NotFoundError,
    StoreError,
    UpstreamFailureError,
    VerificationFailedError,
)
from .ledger import RewardLedger
from .locks import AccountLocks
from .membership import MembershipOracle, StaticMembershipOracle, TelegramMembershipOracle
from .models import (
    ActionIdResponse,
    ActionKind,
    ActionRequest,
    ClaimResponse,
    QuotaKind,
    RequestType,
    TaskCompletion,
    TaskType,
    TaskView,
    TasksResponse,
    UserAccount,
    UserDataResponse,
    WithdrawalRequest,
    WithdrawResponse,
)
from .quota import QuotaTracker
from .ratelimit import RateLimiter
from .storage import InMemoryStorage, RecordStore, SupabaseStorage
from .tokens import ActionTokenRegistry, TokenStore

logger = logging.getLogger(__name__)


def _upstream_guard(method: Callable) -> Callable:
    """Surface store failures as a retryable ``UpstreamFailureError``."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except StoreError as e:
            logger.error(f"{method.__name__} failed upstream: {e}")
            raise UpstreamFailureError("Temporary failure. Please try again later.") from e

    return wrapper


class RewardsService:
    def __init__(
        self,
        store: RecordStore,
        config: Optional[RewardsConfig] = None,
        membership: Optional[MembershipOracle] = None,
        token_store: Optional[TokenStore] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or RewardsConfig()
        self.store = store
        self.clock = clock
        self.membership = membership or StaticMembershipOracle()
        self.tokens = ActionTokenRegistry(
            token_store,
            validity=self.config.token_validity,
            grace=self.config.token_grace,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(self.config.min_action_interval, clock=clock)
        self.quota = QuotaTracker(
            store,
            {kind: self.config.max_for(kind) for kind in QuotaKind},
            reset_interval=self.config.quota_reset_interval,
            clock=clock,
        )
        self.locks = AccountLocks(enabled=self.config.serialize_accounts)
        self.ledger = RewardLedger(
            store,
            commission_rate=self.config.commission_rate,
            commission_min_amount=self.config.commission_min_amount,
            clock=clock,
            locks=self.locks,
        )
        self.commissions = CommissionDispatcher(self.ledger, max_workers=self.config.commission_workers)
        self.handlers: dict[RequestType, Callable[[ActionRequest, int], Any]] = {
            RequestType.GET_USER_DATA: self._handle_get_user_data,
            RequestType.REQUEST_ACTION_ID: self._handle_request_action_id,
            RequestType.WATCH_AD: self._handle_watch_ad,
            RequestType.PRE_SPIN: self._handle_pre_spin,
            RequestType.SPIN_RESULT: self._handle_spin_result,
            RequestType.GET_TASKS: self._handle_get_tasks,
            RequestType.COMPLETE_TASK: self._handle_complete_task,
            RequestType.WITHDRAW: self._handle_withdraw,
        }

    @classmethod
    def from_config(cls, config: RewardsConfig, clock: Clock = utc_now) -> "RewardsService":
        if config.storage_backend == "supabase":
            store: RecordStore = SupabaseStorage(
                config.supabase_url, config.supabase_key, timeout=config.store_timeout_seconds
            )
        else:
            store = InMemoryStorage()
        membership: MembershipOracle
        if config.bot_token:
            membership = TelegramMembershipOracle(config.bot_token, timeout=config.membership_timeout_seconds)
        else:
            logger.warning("BOT_TOKEN not set; channel membership checks will always fail")
            membership = StaticMembershipOracle()
        return cls(store, config=config, membership=membership, clock=clock)

    def handle(self, request: ActionRequest, user_id: int) -> Any:
        handler = self.handlers.get(request.type)
        if handler is None:
            raise InvalidInputError(f"Unknown request type: {request.type}")
        return handler(request, user_id)

    def close(self) -> None:
        self.commissions.shutdown()

    # ---- shared checks ----

    def _load_active(self, user_id: int) -> UserAccount:
        account = self.store.get_user(user_id)
        if account is None:
            raise NotFoundError("User not found.")
        if account.is_banned:
            raise BannedError("User is banned.")
        return account

    # ---- user data ----

    @_upstream_guard
    def get_user_data(
        self,
        user_id: int,
        referral_id: Optional[int] = None,
        telegram_username: Optional[str] = None,
        first_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> UserDataResponse:
        account = self.store.get_user(user_id)
        if account is None:
            return self._register(user_id, referral_id, telegram_username, first_name, photo_url)

        # a banned account is readable but frozen
        changes = {} if account.is_banned else self.quota.refresh(account)
        if changes:
            account = account.model_copy(update=changes)
        return UserDataResponse(
            user=account,
            quotas=[self.quota.status(account, kind) for kind in QuotaKind],
            withdrawals=self.store.list_withdrawals(user_id),
            referral_count=self.store.count_referrals(user_id),
            is_new=False,
            message="Limits reset and user data retrieved." if changes else "User data retrieved.",
        )

    def _register(
        self,
        user_id: int,
        referral_id: Optional[int],
        telegram_username: Optional[str],
        first_name: Optional[str],
        photo_url: Optional[str],
    ) -> UserDataResponse:
        if referral_id is not None and referral_id == user_id:
            raise InvalidInputError("Invalid referral ID: Cannot self-refer.")

        referrer_id = None
        if referral_id is not None:
            if self.store.get_user(referral_id) is not None:
                referrer_id = referral_id
            else:
                logger.warning(f"Referral ID {referral_id} is invalid for user {user_id}.")

        account = UserAccount(
            id=user_id,
            referrer_id=referrer_id,
            telegram_username=telegram_username,
            first_name=first_name,
            photo_url=photo_url,
            created_at=self.clock(),
        )
        try:
            account = self.store.insert_user(account)
        except DuplicateRecordError:
            # registered concurrently by another request
            existing = self.store.get_user(user_id)
            if existing is None:
                raise
            account = existing
        logger.info(f"Registered user {user_id} (referrer: {referrer_id})")
        return UserDataResponse(
            user=account,
            quotas=[self.quota.status(account, kind) for kind in QuotaKind],
            is_new=True,
            message="User registered successfully.",
        )

    # ---- prepare ----

    @_upstream_guard
    def request_action_id(self, user_id: int, kind: Optional[ActionKind]) -> ActionIdResponse:
        if kind is None:
            raise InvalidInputError("Missing or invalid action_type.")
        if kind == ActionKind.SPIN:
            return self.pre_spin(user_id)

        account = self._load_active(user_id)
        self.rate_limiter.check_cooldown(account)
        if kind == ActionKind.WATCH_AD:
            self.quota.ensure_available(account, QuotaKind.ADS)
        return ActionIdResponse(action_id=self.tokens.issue(user_id, kind))

    @_upstream_guard
    def pre_spin(self, user_id: int) -> ActionIdResponse:
        account = self._load_active(user_id)
        self.rate_limiter.check_cooldown(account)
        self.quota.ensure_available(account, QuotaKind.SPINS)

        # the prize is fixed now, before the client sees anything
        sector_index = secrets.randbelow(len(self.config.spin_sectors))
        payload = {
            "sector_index": sector_index,
            "reward": str(self.config.spin_sectors[sector_index]),
        }
        return ActionIdResponse(action_id=self.tokens.issue(user_id, ActionKind.SPIN, payload))

    # ---- commit ----

    @_upstream_guard
    def watch_ad(self, user_id: int, action_id: Optional[str]) -> ClaimResponse:
        reward = self.config.reward_per_ad
        with self.locks.hold(user_id):
            account = self._load_active(user_id)
            self.rate_limiter.check_cooldown(account)
            self.tokens.consume(action_id, user_id, ActionKind.WATCH_AD)
            ads_watched = self.quota.check_and_increment(user_id, QuotaKind.ADS)
            new_balance = self.ledger.apply_reward(user_id, reward, last_ad_watch=self.clock())

        self.commissions.dispatch(account.referrer_id, user_id, reward)
        return ClaimResponse(new_balance=new_balance, reward=reward, daily_ads_watched=ads_watched)

    @_upstream_guard
    def spin_result(self, user_id: int, action_id: Optional[str], result_index: Optional[int] = None) -> ClaimResponse:
        sectors = self.config.spin_sectors
        if result_index is not None and not 0 <= result_index < len(sectors):
            raise InvalidInputError("Invalid spin result index.")

        with self.locks.hold(user_id):
            account = self._load_active(user_id)
            self.rate_limiter.check_cooldown(account)
            payload = self.tokens.consume(action_id, user_id, ActionKind.SPIN) or {}
            if "sector_index" not in payload:
                raise InvalidInputError("Spin token carries no prize.")
            sector_index = payload["sector_index"]
            reward = Decimal(payload["reward"])
            if result_index is not None and result_index != sector_index:
                logger.warning(f"User {user_id} reported sector {result_index}, server chose {sector_index}")

            spins = self.quota.check_and_increment(user_id, QuotaKind.SPINS)
            new_balance = self.ledger.apply_reward(user_id, reward, last_spin=self.clock())

        self.commissions.dispatch(account.referrer_id, user_id, reward)
        return ClaimResponse(new_balance=new_balance, reward=reward, daily_spins=spins, sector_index=sector_index)

    # ---- tasks ----

    @_upstream_guard
    def get_tasks(self, user_id: int) -> TasksResponse:
        completed = self.store.list_completed_task_ids(user_id)
        return TasksResponse(tasks=[
            TaskView(
                **task.model_dump(exclude={"is_active"}),
                is_completed=task.id in completed,
                is_limit_reached=task.is_full,
            )
            for task in self.store.list_active_tasks()
        ])

    @_upstream_guard
    def complete_task(self, user_id: int, task_id: Optional[int]) -> ClaimResponse:
        if task_id is None:
            raise InvalidInputError("Missing or invalid task_id.")

        with self.locks.hold(user_id):
            account = self._load_active(user_id)
            self.rate_limiter.check_cooldown(account)

            if self.store.get_completion(user_id, task_id) is not None:
                raise AlreadyClaimedError("Reward already claimed. Task is complete.")

            task = self.store.get_task(task_id)
            if task is None or not task.is_active:
                raise NotFoundError("Task not found or is inactive.")
            if task.is_full:
                raise CapacityExceededError("Maximum user limit for this task has been reached.")

            if task.type == TaskType.JOIN_CHANNEL and not self.membership.is_member(user_id, task.link):
                raise VerificationFailedError(
                    "Membership not verified. Please ensure you joined the channel and try again."
                )

            # re-check right before the write; the unique constraint has the last word
            if self.store.get_completion(user_id, task_id) is not None:
                raise AlreadyClaimedError("Reward already claimed. Task is complete.")
            try:
                self.store.insert_completion(TaskCompletion(user_id=user_id, task_id=task_id, completed_at=self.clock()))
            except DuplicateRecordError:
                raise AlreadyClaimedError("Reward already claimed. Task is complete.")

            self.store.update_task(task_id, {"current_users": task.current_users + 1})
            new_balance = self.ledger.apply_reward(user_id, task.reward)

        self.commissions.dispatch(account.referrer_id, user_id, task.reward)
        return ClaimResponse(
            new_balance=new_balance,
            reward=task.reward,
            message=f'Task "{task.name}" completed successfully.',
        )

    # ---- withdrawals ----

    @_upstream_guard
    def withdraw(
        self, user_id: int, action_id: Optional[str], amount: Optional[Decimal], destination: Optional[str]
    ) -> WithdrawResponse:
        if amount is None or not amount.is_finite() or amount <= 0:
            raise InvalidInputError("Invalid withdrawal amount.")
        destination = (destination or "").strip()
        if not self.config.destination_min_length <= len(destination) <= self.config.destination_max_length:
            raise InvalidInputError("Invalid Binance ID format.")

        with self.locks.hold(user_id):
            account = self._load_active(user_id)
            self.rate_limiter.check_cooldown(account)
            self.tokens.consume(action_id, user_id, ActionKind.WITHDRAW)
            new_balance = self.ledger.apply_debit(user_id, amount)

        withdrawal = WithdrawalRequest(
            user_id=user_id, destination=destination, amount=amount, requested_at=self.clock()
        )
        try:
            record = self.store.insert_withdrawal(withdrawal)
        except StoreError:
            # the debit is committed; the request must be reconciled by hand
            logger.exception(
                f"Withdrawal record for user {user_id} ({amount} to {destination}) was not stored after debit"
            )
            record = None
        return WithdrawResponse(new_balance=new_balance, withdrawal_record=record)

    # ---- request routing ----

    def _handle_get_user_data(self, request: ActionRequest, user_id: int) -> UserDataResponse:
        return self.get_user_data(
            user_id,
            referral_id=request.referral_id,
            telegram_username=request.telegram_username,
            first_name=request.first_name,
            photo_url=request.photo_url,
        )

    def _handle_request_action_id(self, request: ActionRequest, user_id: int) -> ActionIdResponse:
        return self.request_action_id(user_id, request.action_type)

    def _handle_watch_ad(self, request: ActionRequest, user_id: int) -> ClaimResponse:
        return self.watch_ad(user_id, request.action_id)

    def _handle_pre_spin(self, request: ActionRequest, user_id: int) -> ActionIdResponse:
        return self.pre_spin(user_id)

    def _handle_spin_result(self, request: ActionRequest, user_id: int) -> ClaimResponse:
        return self.spin_result(user_id, request.action_id, request.result_index)

    def _handle_get_tasks(self, request: ActionRequest, user_id: int) -> TasksResponse:
        return self.get_tasks(user_id)

    def _handle_complete_task(self, request: ActionRequest, user_id: int) -> ClaimResponse:
        return self.complete_task(user_id, request.task_id)

    def _handle_withdraw(self, request: ActionRequest, user_id: int) -> WithdrawResponse:
        return self.withdraw(user_id, request.action_id, request.amount, request.destination)
