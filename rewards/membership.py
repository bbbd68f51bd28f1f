import logging
from typing import Iterable, Optional

import httpx

logger = logging.getLogger(__name__)

MEMBER_STATUSES = {"member", "administrator", "creator"}
TELEGRAM_API = "https://api.telegram.org"


def normalize_channel(channel: str) -> str:
    """``https://t.me/name``, ``name`` and ``@name`` all become ``@name``."""
    name = channel.strip().replace("https://t.me/", "").replace("http://t.me/", "").strip("/")
    return name if name.startswith("@") else f"@{name}"


class MembershipOracle:
    """``is_member`` must fail closed: any error means "not a member"."""

    def is_member(self, user_id: int, channel: str) -> bool:
        raise NotImplementedError


class TelegramMembershipOracle(MembershipOracle):
    def __init__(self, bot_token: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.bot_token = bot_token
        self.client = client or httpx.Client(base_url=TELEGRAM_API, timeout=timeout)

    def is_member(self, user_id: int, channel: str) -> bool:
        chat_id = normalize_channel(channel)
        try:
            response = self.client.post(
                f"/bot{self.bot_token}/getChatMember",
                json={"chat_id": chat_id, "user_id": user_id},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Membership check for {chat_id} failed: {e}")
            return False

        if not isinstance(data, dict):
            logger.error(f"Unexpected Telegram API response for {chat_id}: {data!r}")
            return False
        if not response.is_success or not data.get("ok"):
            logger.error(f"Telegram API refused membership check for {chat_id}: {data.get('description')}")
            return False
        result = data.get("result") or {}
        return isinstance(result, dict) and result.get("status") in MEMBER_STATUSES

    def close(self) -> None:
        self.client.close()


class StaticMembershipOracle(MembershipOracle):
    def __init__(self, members: Iterable[tuple[int, str]] = ()):
        self.members = {(user_id, normalize_channel(channel)) for user_id, channel in members}

    def add(self, user_id: int, channel: str) -> None:
        self.members.add((user_id, normalize_channel(channel)))

    def is_member(self, user_id: int, channel: str) -> bool:
        return (user_id, normalize_channel(channel)) in self.members
