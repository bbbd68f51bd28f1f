import threading
from contextlib import contextmanager, nullcontext
from typing import Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class AccountLocks:
    """Optional per-account serialization of read-modify-write sequences.

    Process-local only. With ``enabled=False`` every ``hold`` is a no-op and
    the service runs with last-write-wins semantics on the store. An
    account's lock is dropped once no thread holds or waits on it.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._locks: dict[int, _Entry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def _held(self, user_id: int) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(user_id, _Entry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if not entry.holders:
                    del self._locks[user_id]

    def hold(self, user_id: int):
        if not self.enabled:
            return nullcontext()
        return self._held(user_id)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
