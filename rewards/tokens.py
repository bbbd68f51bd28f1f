"""Single-use action tokens.

A client asks for a token ("prepare") before claiming a reward ("commit").
The commit consumes the token, so replaying the same claim fails. A token
may carry a payload decided by the server at prepare time, e.g. the spin
prize, so the client never gets to choose it.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from .clock import Clock, utc_now
from .errors import InvalidOrExpiredTokenError
from .models import ActionKind, ActionToken

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16


class TokenStore:
    """Storage capability behind the registry.

    ``delete`` is the atomic check-and-delete primitive: it must return True
    for exactly one caller per token id. A shared backend (e.g. Redis ``DEL``)
    can implement the same contract for multi-instance deployments.
    """

    def add(self, token: ActionToken) -> None:
        raise NotImplementedError

    def get(self, token_id: str) -> Optional[ActionToken]:
        raise NotImplementedError

    def delete(self, token_id: str) -> bool:
        raise NotImplementedError

    def ids_issued_before(self, cutoff: datetime) -> list[str]:
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryTokenStore(TokenStore):
    def __init__(self):
        self._tokens: dict[str, ActionToken] = {}
        self._lock = threading.Lock()

    def add(self, token: ActionToken) -> None:
        with self._lock:
            self._tokens[token.id] = token

    def get(self, token_id: str) -> Optional[ActionToken]:
        with self._lock:
            return self._tokens.get(token_id)

    def delete(self, token_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(token_id, None) is not None

    def ids_issued_before(self, cutoff: datetime) -> list[str]:
        with self._lock:
            return [t.id for t in self._tokens.values() if t.issued_at < cutoff]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class ActionTokenRegistry:
    def __init__(
        self,
        store: Optional[TokenStore] = None,
        validity: timedelta = timedelta(seconds=60),
        grace: timedelta = timedelta(seconds=5),
        clock: Clock = utc_now,
    ):
        self.store = store or InMemoryTokenStore()
        self.validity = validity
        self.grace = grace
        self.clock = clock

    def issue(self, user_id: int, kind: ActionKind, payload: Optional[dict[str, Any]] = None) -> str:
        token = ActionToken(
            id=secrets.token_hex(TOKEN_BYTES),
            user_id=user_id,
            kind=kind,
            issued_at=self.clock(),
            payload=payload,
        )
        self.store.add(token)
        logger.debug(f"Issued {kind.value} token for user {user_id}")
        return token.id

    def consume(self, token_id: Optional[str], user_id: int, kind: ActionKind) -> Optional[dict[str, Any]]:
        """Validate and remove a token; returns its payload.

        A mismatched user or kind leaves a live entry in place. An expired
        entry is removed whoever presents it, even though the call fails.
        """
        if not token_id:
            raise InvalidOrExpiredTokenError("Missing action ID. Please try again.")

        token = self.store.get(token_id)
        if token is None:
            raise InvalidOrExpiredTokenError("Invalid or expired action ID. Please try again.")

        if self.clock() - token.issued_at > self.validity:
            self.store.delete(token_id)
            raise InvalidOrExpiredTokenError("Action ID has expired. Please try again.")

        if token.user_id != user_id or token.kind != kind:
            logger.warning(
                f"Token mismatch: user {user_id} presented a {token.kind.value} token "
                f"owned by {token.user_id} for {kind.value}"
            )
            raise InvalidOrExpiredTokenError("Invalid or expired action ID. Please try again.")

        if not self.store.delete(token_id):
            logger.warning(f"Concurrent replay of {kind.value} token for user {user_id}")
            raise InvalidOrExpiredTokenError("Invalid or expired action ID. Please try again.")

        return token.payload

    def purge_expired(self) -> int:
        cutoff = self.clock() - self.validity - self.grace
        purged = 0
        for token_id in self.store.ids_issued_before(cutoff):
            if self.store.delete(token_id):
                purged += 1
        if purged:
            logger.debug(f"Purged {purged} expired action tokens")
        return purged

    def __len__(self) -> int:
        return len(self.store)


class TokenReaper:
    """Background thread that periodically drops abandoned tokens."""

    def __init__(self, registry: ActionTokenRegistry, interval: float = 5.0):
        self.registry = registry
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="token-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.registry.purge_expired()
            except Exception:
                logger.exception("Token reaper pass failed")
