"""Telegram Web App ``initData`` verification.

The launch payload is a query string signed by Telegram with a key derived
from the bot token. A valid signature is the only identity assertion the
backend accepts; the user id inside it is trusted from then on.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode

from .errors import UnauthenticatedError

logger = logging.getLogger(__name__)


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def _data_check_string(fields: dict[str, str]) -> str:
    return "\n".join(f"{k}={v}" for k, v in sorted(fields.items()) if k != "hash")


def sign_init_data(fields: dict[str, str], bot_token: str) -> str:
    """Build a signed ``initData`` string the way Telegram does."""
    digest = hmac.new(_secret_key(bot_token), _data_check_string(fields).encode(), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": digest})


class InitDataVerifier:
    def __init__(self, bot_token: str, max_age_seconds: Optional[int] = 86400, clock=time.time):
        self.bot_token = bot_token
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    def verify(self, init_data: Optional[str]) -> int:
        """Return the asserted user id or raise ``UnauthenticatedError``."""
        if not init_data:
            raise UnauthenticatedError("Missing initData.")
        if not self.bot_token:
            logger.error("BOT_TOKEN is not configured; rejecting all launch data")
            raise UnauthenticatedError("Invalid or expired initData. Security check failed.")

        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        received = fields.pop("hash", None)
        if not received:
            raise UnauthenticatedError("Invalid or expired initData. Security check failed.")

        expected = hmac.new(
            _secret_key(self.bot_token), _data_check_string(fields).encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, received):
            logger.warning("initData signature mismatch")
            raise UnauthenticatedError("Invalid or expired initData. Security check failed.")

        if self.max_age_seconds is not None:
            try:
                auth_date = int(fields.get("auth_date", ""))
            except ValueError:
                raise UnauthenticatedError("initData is missing auth_date.")
            if self.clock() - auth_date > self.max_age_seconds:
                raise UnauthenticatedError("Invalid or expired initData. Security check failed.")

        try:
            user = json.loads(fields.get("user", ""))
            return int(user["id"])
        except (ValueError, TypeError, KeyError):
            raise UnauthenticatedError("initData does not identify a user.")
