import logging
import threading
from datetime import datetime
from decimal import Decimal
from enum import Enum
from itertools import count
from typing import Any, Optional

import httpx

from .errors import DuplicateRecordError, StoreError
from .models import (
    CommissionRecord,
    Task,
    TaskCompletion,
    UserAccount,
    WithdrawalRequest,
)

logger = logging.getLogger(__name__)


class RecordStore:
    """Persistence collaborator: read-by-id, read-by-filter, insert, partial update.

    No cross-entity atomicity is assumed. Implementations raise ``StoreError``
    when the backend fails or times out and ``DuplicateRecordError`` when an
    insert violates a uniqueness constraint.
    """

    def get_user(self, user_id: int) -> Optional[UserAccount]:
        raise NotImplementedError

    def insert_user(self, account: UserAccount) -> UserAccount:
        raise NotImplementedError

    def update_user(self, user_id: int, changes: dict[str, Any]) -> None:
        raise NotImplementedError

    def count_referrals(self, referrer_id: int) -> int:
        raise NotImplementedError

    def get_task(self, task_id: int) -> Optional[Task]:
        raise NotImplementedError

    def list_active_tasks(self) -> list[Task]:
        raise NotImplementedError

    def insert_task(self, task: Task) -> Task:
        raise NotImplementedError

    def update_task(self, task_id: int, changes: dict[str, Any]) -> None:
        raise NotImplementedError

    def get_completion(self, user_id: int, task_id: int) -> Optional[TaskCompletion]:
        raise NotImplementedError

    def insert_completion(self, completion: TaskCompletion) -> TaskCompletion:
        raise NotImplementedError

    def list_completed_task_ids(self, user_id: int) -> set[int]:
        raise NotImplementedError

    def insert_withdrawal(self, withdrawal: WithdrawalRequest) -> WithdrawalRequest:
        raise NotImplementedError

    def list_withdrawals(self, user_id: int) -> list[WithdrawalRequest]:
        raise NotImplementedError

    def insert_commission(self, record: CommissionRecord) -> CommissionRecord:
        raise NotImplementedError

    def list_commissions(self, referrer_id: int) -> list[CommissionRecord]:
        raise NotImplementedError


class InMemoryStorage(RecordStore):
    def __init__(self):
        self.users: dict[int, dict] = {}
        self.tasks: dict[int, dict] = {}
        self.completions: dict[tuple[int, int], dict] = {}
        self.withdrawals: list[dict] = []
        self.commissions: list[dict] = []
        self._ids = count(1)
        self._lock = threading.RLock()

    def get_user(self, user_id: int) -> Optional[UserAccount]:
        with self._lock:
            data = self.users.get(user_id)
            return UserAccount(**data) if data else None

    def insert_user(self, account: UserAccount) -> UserAccount:
        with self._lock:
            if account.id in self.users:
                raise DuplicateRecordError(f"User {account.id} already exists")
            self.users[account.id] = account.model_dump()
            return account

    def update_user(self, user_id: int, changes: dict[str, Any]) -> None:
        with self._lock:
            data = self.users.get(user_id)
            if data is None:
                raise StoreError(f"User {user_id} not found for update")
            merged = {**data, **changes}
            self.users[user_id] = UserAccount(**merged).model_dump()

    def count_referrals(self, referrer_id: int) -> int:
        with self._lock:
            return sum(1 for u in self.users.values() if u["referrer_id"] == referrer_id)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._lock:
            data = self.tasks.get(task_id)
            return Task(**data) if data else None

    def list_active_tasks(self) -> list[Task]:
        with self._lock:
            return [Task(**t) for t in self.tasks.values() if t["is_active"]]

    def insert_task(self, task: Task) -> Task:
        with self._lock:
            self.tasks[task.id] = task.model_dump()
            return task

    def update_task(self, task_id: int, changes: dict[str, Any]) -> None:
        with self._lock:
            data = self.tasks.get(task_id)
            if data is None:
                raise StoreError(f"Task {task_id} not found for update")
            self.tasks[task_id] = Task(**{**data, **changes}).model_dump()

    def get_completion(self, user_id: int, task_id: int) -> Optional[TaskCompletion]:
        with self._lock:
            data = self.completions.get((user_id, task_id))
            return TaskCompletion(**data) if data else None

    def insert_completion(self, completion: TaskCompletion) -> TaskCompletion:
        key = (completion.user_id, completion.task_id)
        with self._lock:
            if key in self.completions:
                raise DuplicateRecordError(
                    f"Task {completion.task_id} already completed by user {completion.user_id}"
                )
            self.completions[key] = completion.model_dump()
            return completion

    def list_completed_task_ids(self, user_id: int) -> set[int]:
        with self._lock:
            return {task_id for (uid, task_id) in self.completions if uid == user_id}

    def insert_withdrawal(self, withdrawal: WithdrawalRequest) -> WithdrawalRequest:
        with self._lock:
            stored = withdrawal.model_copy(update={"id": next(self._ids)})
            self.withdrawals.append(stored.model_dump())
            return stored

    def list_withdrawals(self, user_id: int) -> list[WithdrawalRequest]:
        with self._lock:
            rows = [WithdrawalRequest(**w) for w in self.withdrawals if w["user_id"] == user_id]
        rows.sort(key=lambda w: w.requested_at, reverse=True)
        return rows

    def insert_commission(self, record: CommissionRecord) -> CommissionRecord:
        with self._lock:
            stored = record.model_copy(update={"id": next(self._ids)})
            self.commissions.append(stored.model_dump())
            return stored

    def list_commissions(self, referrer_id: int) -> list[CommissionRecord]:
        with self._lock:
            return [CommissionRecord(**c) for c in self.commissions if c["referrer_id"] == referrer_id]


# Column names of the existing Supabase schema that differ from ours.
USER_COLUMNS = {
    "ads_watched": "daily_ads_watched",
    "spins_used": "daily_spins",
    "referrer_id": "referral_id",
}
WITHDRAWAL_COLUMNS = {"destination": "binance_id"}
UNIQUE_VIOLATION = "23505"


def _to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _to_row(data: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    return {columns.get(k, k): _to_json(v) for k, v in data.items()}


def _from_row(row: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    reverse = {v: k for k, v in columns.items()}
    return {reverse.get(k, k): v for k, v in row.items()}


class SupabaseStorage(RecordStore):
    """Record store on the Supabase PostgREST API (``/rest/v1/<table>``)."""

    def __init__(self, url: str, api_key: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        if not url or not api_key:
            raise ValueError("Supabase storage needs both a URL and an API key")
        self.client = client or httpx.Client(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            },
            timeout=timeout,
        )

    def close(self) -> None:
        self.client.close()

    def _request(
        self, method: str, table: str, params: Optional[dict] = None, body: Any = None
    ) -> list[dict]:
        try:
            response = self.client.request(method, f"/{table}", params=params, json=body)
        except httpx.TimeoutException as e:
            raise StoreError(f"Supabase {method} {table} timed out") from e
        except httpx.HTTPError as e:
            raise StoreError(f"Supabase {method} {table} failed: {e}") from e

        if response.status_code == 204:
            return []
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise StoreError(f"Supabase {method} {table} returned a non-JSON body") from e

        try:
            detail = response.json()
        except ValueError:
            detail = {"message": response.text}
        if not isinstance(detail, dict):
            detail = {"message": response.text}
        if response.status_code == 409 or detail.get("code") == UNIQUE_VIOLATION:
            raise DuplicateRecordError(f"Supabase {table}: {detail.get('message', 'duplicate row')}")
        raise StoreError(
            f"Supabase error ({response.status_code} {table}): {detail.get('message', response.reason_phrase)}"
        )

    def _first(self, rows: list[dict]) -> Optional[dict]:
        return rows[0] if rows else None

    def get_user(self, user_id: int) -> Optional[UserAccount]:
        row = self._first(self._request("GET", "users", {"id": f"eq.{user_id}", "select": "*"}))
        return UserAccount(**_from_row(row, USER_COLUMNS)) if row else None

    def insert_user(self, account: UserAccount) -> UserAccount:
        rows = self._request("POST", "users", body=_to_row(account.model_dump(), USER_COLUMNS))
        return UserAccount(**_from_row(rows[0], USER_COLUMNS)) if rows else account

    def update_user(self, user_id: int, changes: dict[str, Any]) -> None:
        self._request("PATCH", "users", {"id": f"eq.{user_id}"}, _to_row(changes, USER_COLUMNS))

    def count_referrals(self, referrer_id: int) -> int:
        return len(self._request("GET", "users", {"referral_id": f"eq.{referrer_id}", "select": "id"}))

    def get_task(self, task_id: int) -> Optional[Task]:
        row = self._first(self._request("GET", "tasks", {"id": f"eq.{task_id}", "select": "*"}))
        return Task(**row) if row else None

    def list_active_tasks(self) -> list[Task]:
        rows = self._request("GET", "tasks", {"is_active": "eq.true", "select": "*"})
        return [Task(**row) for row in rows]

    def insert_task(self, task: Task) -> Task:
        rows = self._request("POST", "tasks", body=_to_row(task.model_dump(), {}))
        return Task(**rows[0]) if rows else task

    def update_task(self, task_id: int, changes: dict[str, Any]) -> None:
        self._request("PATCH", "tasks", {"id": f"eq.{task_id}"}, _to_row(changes, {}))

    def get_completion(self, user_id: int, task_id: int) -> Optional[TaskCompletion]:
        row = self._first(self._request(
            "GET", "user_tasks", {"user_id": f"eq.{user_id}", "task_id": f"eq.{task_id}", "select": "*"}
        ))
        return TaskCompletion(**row) if row else None

    def insert_completion(self, completion: TaskCompletion) -> TaskCompletion:
        self._request("POST", "user_tasks", body=_to_row(completion.model_dump(), {}))
        return completion

    def list_completed_task_ids(self, user_id: int) -> set[int]:
        rows = self._request("GET", "user_tasks", {"user_id": f"eq.{user_id}", "select": "task_id"})
        return {row["task_id"] for row in rows}

    def insert_withdrawal(self, withdrawal: WithdrawalRequest) -> WithdrawalRequest:
        data = withdrawal.model_dump(exclude={"id"})
        rows = self._request("POST", "withdrawals", body=_to_row(data, WITHDRAWAL_COLUMNS))
        return WithdrawalRequest(**_from_row(rows[0], WITHDRAWAL_COLUMNS)) if rows else withdrawal

    def list_withdrawals(self, user_id: int) -> list[WithdrawalRequest]:
        rows = self._request(
            "GET", "withdrawals", {"user_id": f"eq.{user_id}", "order": "requested_at.desc", "select": "*"}
        )
        return [WithdrawalRequest(**_from_row(row, WITHDRAWAL_COLUMNS)) for row in rows]

    def insert_commission(self, record: CommissionRecord) -> CommissionRecord:
        rows = self._request("POST", "commissions", body=_to_row(record.model_dump(exclude={"id"}), {}))
        return CommissionRecord(**rows[0]) if rows else record

    def list_commissions(self, referrer_id: int) -> list[CommissionRecord]:
        rows = self._request("GET", "commissions", {"referrer_id": f"eq.{referrer_id}", "select": "*"})
        return [CommissionRecord(**row) for row in rows]
