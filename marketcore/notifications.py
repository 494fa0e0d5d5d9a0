"""
Outbound notifications. Only ever called from settlement continuations,
never inside a transaction.

The most recent notifications are kept in `sent` (at most SENT_HISTORY
of them) and, when NOTIFY_WEBHOOK_URL is set, each is POSTed there as
JSON.
"""

import logging
from collections import deque
from typing import Optional

import httpx

from marketcore import config
from marketcore.models import Answer, Contract, User, now_ms


logger = logging.getLogger(__name__)

SENT_HISTORY = 1000


class NotificationDispatcher:

    def __init__(self, webhook_url: Optional[str] = None,
                 timeout: float = 10.0, history: int = SENT_HISTORY):
        self.webhook_url = (config.NOTIFY_WEBHOOK_URL if webhook_url is None
                            else webhook_url)
        self.timeout = timeout
        self.sent: deque[dict] = deque(maxlen=history)

    async def notify_new_answer(self, answer: Answer, user: User,
                                contract: Contract) -> None:
        await self._dispatch("new_answer", {
            "contract_id": contract.id,
            "answer_id": answer.id,
            "text": answer.text,
            "user_id": user.id,
            "username": user.username,
            "recipients": [uid for uid in contract.follower_ids
                           if uid != user.id],
        })

    async def notify_close_time_updated(self, contract: Contract, updater: User,
                                        close_time: int) -> None:
        await self._dispatch("close_time_updated", {
            "contract_id": contract.id,
            "close_time": close_time,
            "user_id": updater.id,
            "username": updater.username,
            "recipients": [uid for uid in contract.follower_ids
                           if uid != updater.id],
        })

    async def revalidate_contract(self, contract: Contract) -> None:
        await self._dispatch("revalidate", {"contract_id": contract.id})

    async def add_contract_to_feed(self, contract: Contract, reason: str,
                                   group_ids: list[str]) -> None:
        await self._dispatch("feed", {
            "contract_id": contract.id,
            "reason": reason,
            "group_ids": group_ids,
        })

    async def _dispatch(self, kind: str, payload: dict) -> None:
        message = {"kind": kind, "created_time": now_ms(), **payload}
        self.sent.append(message)
        if not self.webhook_url:
            return
        async with httpx.AsyncClient() as client:
            resp = await client.post(self.webhook_url, json=message,
                                     timeout=self.timeout)
        resp.raise_for_status()
        logger.debug("notification %s delivered", kind)
