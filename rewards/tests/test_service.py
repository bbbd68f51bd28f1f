"""
Tests for the reward claim flows

Tests cover:
1. Registration and referral linking
2. Watch-ad claim end to end
3. Spin prepare/commit with server-chosen prize
4. Task claims (idempotence, capacity, membership)
5. Withdrawals
6. Referral commission propagation
7. Upstream failures
"""

import threading
from decimal import Decimal

import pytest

from rewards.config import RewardsConfig
from rewards.errors import (
    AlreadyClaimedError,
    BannedError,
    CapacityExceededError,
    InsufficientBalanceError,
    InvalidInputError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    QuotaExceededError,
    RateLimitedError,
    StoreError,
    UpstreamFailureError,
    VerificationFailedError,
)
from rewards.models import ActionKind, CommissionOutcome, SkipReason, Task, TaskType
from rewards.service import RewardsService
from rewards.storage import InMemoryStorage

USER_ID = 100
REFERRER_ID = 200


def _watch_ad(service, user_id=USER_ID):
    action_id = service.request_action_id(user_id, ActionKind.WATCH_AD).action_id
    return service.watch_ad(user_id, action_id)


class TestRegistration:
    def test_new_user_registered(self, service, store):
        response = service.get_user_data(USER_ID, first_name="Ada")

        assert response.is_new
        assert response.user.balance == Decimal("0")
        assert store.get_user(USER_ID).first_name == "Ada"

    def test_existing_user_loaded(self, service):
        service.get_user_data(USER_ID)
        response = service.get_user_data(USER_ID)

        assert not response.is_new
        assert response.message == "User data retrieved."

    def test_valid_referrer_linked(self, service, store):
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)

        assert store.get_user(USER_ID).referrer_id == REFERRER_ID
        assert service.get_user_data(REFERRER_ID).referral_count == 1

    def test_unknown_referrer_dropped(self, service, store):
        service.get_user_data(USER_ID, referral_id=31337)
        assert store.get_user(USER_ID).referrer_id is None

    def test_self_referral_rejected(self, service, store):
        with pytest.raises(InvalidInputError):
            service.get_user_data(USER_ID, referral_id=USER_ID)
        assert store.get_user(USER_ID) is None

    def test_loading_applies_due_quota_reset(self, service, store, clock):
        service.get_user_data(USER_ID)
        store.update_user(USER_ID, {"ads_watched": 100, "ads_limit_reached_at": clock()})
        clock.advance(hours=6, seconds=1)

        response = service.get_user_data(USER_ID)

        assert response.user.ads_watched == 0
        assert response.message == "Limits reset and user data retrieved."

    def test_banned_account_quota_left_frozen(self, service, store, clock):
        service.get_user_data(USER_ID)
        store.update_user(USER_ID, {"ads_watched": 100, "ads_limit_reached_at": clock(), "is_banned": True})
        clock.advance(hours=7)

        response = service.get_user_data(USER_ID)

        assert response.user.ads_watched == 100
        assert store.get_user(USER_ID).ads_watched == 100
        assert store.get_user(USER_ID).ads_limit_reached_at is not None


class TestWatchAd:
    def test_end_to_end_claim(self, service, store):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id

        response = service.watch_ad(USER_ID, action_id)

        assert response.new_balance == Decimal("3")
        assert response.reward == Decimal("3")
        assert response.daily_ads_watched == 1
        account = store.get_user(USER_ID)
        assert account.balance == Decimal("3")
        assert account.ads_watched == 1
        with pytest.raises(InvalidOrExpiredTokenError):
            service.tokens.consume(action_id, USER_ID, ActionKind.WATCH_AD)

    def test_replayed_token_rejected(self, service, store, clock):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id
        service.watch_ad(USER_ID, action_id)
        clock.advance(seconds=5)

        with pytest.raises(InvalidOrExpiredTokenError):
            service.watch_ad(USER_ID, action_id)
        assert store.get_user(USER_ID).balance == Decimal("3")

    def test_expired_token_rejected(self, service, store, clock):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id
        clock.advance(seconds=61)

        with pytest.raises(InvalidOrExpiredTokenError):
            service.watch_ad(USER_ID, action_id)
        assert store.get_user(USER_ID).balance == Decimal("0")

    def test_cooldown_rejection_keeps_token(self, service, store, clock):
        service.get_user_data(USER_ID)
        first = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id
        second = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id
        service.watch_ad(USER_ID, first)

        clock.advance(milliseconds=2999)
        with pytest.raises(RateLimitedError):
            service.watch_ad(USER_ID, second)

        clock.advance(milliseconds=1)
        assert service.watch_ad(USER_ID, second).new_balance == Decimal("6")

    def test_withdraw_token_cannot_claim_ad(self, service):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.WITHDRAW).action_id

        with pytest.raises(InvalidOrExpiredTokenError):
            service.watch_ad(USER_ID, action_id)

    def test_exhausted_quota_rejects_prepare(self, store, membership, clock):
        service = RewardsService(store, config=RewardsConfig(max_ads=2), membership=membership, clock=clock)
        service.get_user_data(USER_ID)
        for _ in range(2):
            _watch_ad(service)
            clock.advance(seconds=3)

        with pytest.raises(QuotaExceededError):
            service.request_action_id(USER_ID, ActionKind.WATCH_AD)
        assert store.get_user(USER_ID).ads_watched == 2
        service.close()

    def test_banned_user_rejected(self, service, store):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.WATCH_AD).action_id
        store.update_user(USER_ID, {"is_banned": True})

        with pytest.raises(BannedError):
            service.watch_ad(USER_ID, action_id)
        assert store.get_user(USER_ID).balance == Decimal("0")

    def test_unknown_user_rejected(self, service):
        with pytest.raises(NotFoundError):
            service.request_action_id(USER_ID, ActionKind.WATCH_AD)


class TestSpin:
    def test_prize_is_decided_at_prepare(self, service, store):
        service.get_user_data(USER_ID)
        action_id = service.pre_spin(USER_ID).action_id
        prize = service.tokens.store.get(action_id).payload

        response = service.spin_result(USER_ID, action_id)

        assert response.sector_index == prize["sector_index"]
        assert response.reward == Decimal(prize["reward"])
        assert response.reward in service.config.spin_sectors
        assert response.daily_spins == 1
        assert store.get_user(USER_ID).balance == response.reward

    def test_client_index_does_not_pick_prize(self, service):
        service.get_user_data(USER_ID)
        action_id = service.pre_spin(USER_ID).action_id
        chosen = service.tokens.store.get(action_id).payload["sector_index"]
        claimed = (chosen + 1) % len(service.config.spin_sectors)

        response = service.spin_result(USER_ID, action_id, result_index=claimed)

        assert response.sector_index == chosen

    def test_out_of_range_index_rejected(self, service):
        service.get_user_data(USER_ID)
        action_id = service.pre_spin(USER_ID).action_id

        with pytest.raises(InvalidInputError):
            service.spin_result(USER_ID, action_id, result_index=99)
        assert len(service.tokens) == 1

    def test_request_action_id_for_spin_delegates_to_pre_spin(self, service):
        service.get_user_data(USER_ID)
        action_id = service.request_action_id(USER_ID, ActionKind.SPIN).action_id
        assert "sector_index" in service.tokens.store.get(action_id).payload

    def test_spin_quota(self, store, membership, clock):
        service = RewardsService(store, config=RewardsConfig(max_spins=2), membership=membership, clock=clock)
        service.get_user_data(USER_ID)
        for _ in range(2):
            service.spin_result(USER_ID, service.pre_spin(USER_ID).action_id)
            clock.advance(seconds=3)

        with pytest.raises(QuotaExceededError):
            service.pre_spin(USER_ID)
        service.close()


class TestTasks:
    @pytest.fixture(autouse=True)
    def tasks(self, store):
        store.insert_task(Task(id=1, name="Visit sponsor", link="https://example.com", reward=Decimal("200"), max_users=10))
        store.insert_task(Task(id=2, name="Tiny offer", reward=Decimal("50"), max_users=1))
        store.insert_task(Task(
            id=3, name="Join channel", link="https://t.me/sponsor", reward=Decimal("100"),
            max_users=10, type=TaskType.JOIN_CHANNEL,
        ))
        store.insert_task(Task(id=4, name="Retired", reward=Decimal("10"), max_users=10, is_active=False))

    def test_claim_twice_pays_once(self, service, store, clock):
        service.get_user_data(USER_ID)

        response = service.complete_task(USER_ID, 1)
        assert response.new_balance == Decimal("200")

        clock.advance(seconds=5)
        with pytest.raises(AlreadyClaimedError):
            service.complete_task(USER_ID, 1)

        assert store.get_user(USER_ID).balance == Decimal("200")
        assert store.get_task(1).current_users == 1

    def test_capacity_exceeded(self, service):
        service.get_user_data(USER_ID)
        service.get_user_data(REFERRER_ID)
        service.complete_task(REFERRER_ID, 2)

        with pytest.raises(CapacityExceededError):
            service.complete_task(USER_ID, 2)

    def test_membership_required(self, service, store, membership, clock):
        service.get_user_data(USER_ID)

        with pytest.raises(VerificationFailedError):
            service.complete_task(USER_ID, 3)
        assert store.get_completion(USER_ID, 3) is None

        membership.add(USER_ID, "@sponsor")
        clock.advance(seconds=5)
        assert service.complete_task(USER_ID, 3).reward == Decimal("100")

    def test_inactive_or_unknown_task(self, service):
        service.get_user_data(USER_ID)
        with pytest.raises(NotFoundError):
            service.complete_task(USER_ID, 4)
        with pytest.raises(NotFoundError):
            service.complete_task(USER_ID, 404)

    def test_missing_task_id(self, service):
        with pytest.raises(InvalidInputError):
            service.complete_task(USER_ID, None)

    def test_task_listing(self, service, clock):
        service.get_user_data(USER_ID)
        service.get_user_data(REFERRER_ID)
        service.complete_task(USER_ID, 1)
        service.complete_task(REFERRER_ID, 2)

        tasks = {t.id: t for t in service.get_tasks(USER_ID).tasks}

        assert set(tasks) == {1, 2, 3}
        assert tasks[1].is_completed
        assert not tasks[2].is_completed
        assert tasks[2].is_limit_reached


class TestWithdraw:
    def _funded(self, service, clock):
        service.get_user_data(USER_ID)
        _watch_ad(service)
        clock.advance(seconds=3)

    def test_withdraw(self, service, store, clock):
        self._funded(service, clock)
        action_id = service.request_action_id(USER_ID, ActionKind.WITHDRAW).action_id

        response = service.withdraw(USER_ID, action_id, Decimal("2"), "binance-123")

        assert response.new_balance == Decimal("1")
        assert response.withdrawal_record.amount == Decimal("2")
        assert store.list_withdrawals(USER_ID)[0].destination == "binance-123"

    def test_overdraft_rejected(self, service, store, clock):
        self._funded(service, clock)
        action_id = service.request_action_id(USER_ID, ActionKind.WITHDRAW).action_id

        with pytest.raises(InsufficientBalanceError):
            service.withdraw(USER_ID, action_id, Decimal("5"), "binance-123")

        assert store.get_user(USER_ID).balance == Decimal("3")
        assert store.list_withdrawals(USER_ID) == []

    def test_failed_withdrawal_burns_token(self, service, clock):
        self._funded(service, clock)
        action_id = service.request_action_id(USER_ID, ActionKind.WITHDRAW).action_id
        with pytest.raises(InsufficientBalanceError):
            service.withdraw(USER_ID, action_id, Decimal("5"), "binance-123")

        with pytest.raises(InvalidOrExpiredTokenError):
            service.withdraw(USER_ID, action_id, Decimal("1"), "binance-123")

    @pytest.mark.parametrize("amount, destination", [
        (None, "binance-123"),
        (Decimal("0"), "binance-123"),
        (Decimal("-2"), "binance-123"),
        (Decimal("1"), "abc"),
        (Decimal("1"), "x" * 51),
    ])
    def test_invalid_input_keeps_token(self, service, clock, amount, destination):
        self._funded(service, clock)
        action_id = service.request_action_id(USER_ID, ActionKind.WITHDRAW).action_id

        with pytest.raises(InvalidInputError):
            service.withdraw(USER_ID, action_id, amount, destination)
        assert len(service.tokens) == 1


class TestCommissionPropagation:
    def test_referrer_earns_five_percent(self, service, store):
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)

        _watch_ad(service)
        assert service.commissions.drain(timeout=5)

        assert store.get_user(USER_ID).balance == Decimal("3")
        assert store.get_user(REFERRER_ID).balance == Decimal("0.15")

    def test_banned_referrer_does_not_affect_referee(self, service, store):
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)
        store.update_user(REFERRER_ID, {"is_banned": True})

        response = _watch_ad(service)
        assert service.commissions.drain(timeout=5)

        assert response.new_balance == Decimal("3")
        assert store.get_user(USER_ID).balance == Decimal("3")
        assert store.get_user(REFERRER_ID).balance == Decimal("0")

    def test_task_reward_propagates_commission(self, service, store):
        store.insert_task(Task(id=9, name="Visit", reward=Decimal("200"), max_users=5))
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)

        service.complete_task(USER_ID, 9)
        assert service.commissions.drain(timeout=5)

        assert store.get_user(REFERRER_ID).balance == Decimal("10")

    def test_claim_does_not_wait_for_commission(self, service, store):
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)
        blocking = _BlockingLedger()
        service.commissions.ledger = blocking

        response = _watch_ad(service)

        assert response.new_balance == Decimal("3")
        assert blocking.started.wait(timeout=5)
        assert not service.commissions.drain(timeout=0.05)

        blocking.release.set()
        assert service.commissions.drain(timeout=5)


class _BlockingLedger:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def settle_commission(self, referrer_id, referee_id, source_amount):
        self.started.set()
        self.release.wait(timeout=5)
        return CommissionOutcome(applied=False, amount=Decimal("0"), reason=SkipReason.REFERRER_MISSING)


class _BrokenStore(InMemoryStorage):
    def get_user(self, user_id):
        raise StoreError("connection reset")


class TestUpstreamFailure:
    def test_store_failure_surfaces_as_upstream(self, membership, clock):
        service = RewardsService(_BrokenStore(), membership=membership, clock=clock)
        with pytest.raises(UpstreamFailureError):
            service.get_user_data(USER_ID)
        service.close()


class TestSerializedAccounts:
    def test_claims_work_with_account_locks(self, store, membership, clock):
        service = RewardsService(
            store, config=RewardsConfig(serialize_accounts=True), membership=membership, clock=clock
        )
        service.get_user_data(USER_ID)
        assert _watch_ad(service).new_balance == Decimal("3")
        service.close()

    def test_commission_waits_for_referrer_lock(self, store, membership, clock):
        service = RewardsService(
            store, config=RewardsConfig(serialize_accounts=True), membership=membership, clock=clock
        )
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)
        settled = threading.Event()

        def settle():
            service.ledger.settle_commission(REFERRER_ID, USER_ID, Decimal("3"))
            settled.set()

        worker = threading.Thread(target=settle)
        with service.locks.hold(REFERRER_ID):
            worker.start()
            assert not settled.wait(timeout=0.2)
            assert store.get_user(REFERRER_ID).balance == Decimal("0")
        worker.join(timeout=5)

        assert settled.is_set()
        assert store.get_user(REFERRER_ID).balance == Decimal("0.15")
        service.close()

    def test_account_locks_released_after_use(self, store, membership, clock):
        service = RewardsService(
            store, config=RewardsConfig(serialize_accounts=True), membership=membership, clock=clock
        )
        service.get_user_data(REFERRER_ID)
        service.get_user_data(USER_ID, referral_id=REFERRER_ID)

        _watch_ad(service)
        assert service.commissions.drain(timeout=5)

        assert len(service.locks) == 0
        service.close()
