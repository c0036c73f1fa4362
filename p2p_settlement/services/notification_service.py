"""
Notification service — Telegram delivery for queue events.

Formats one message per queue event and sends it to the chats routed for
the items involved (``telegram_data``) and to the operator chat.  Delivery
is best-effort: callers dispatch through Celery and never wait on it.
"""

import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.config import settings
from p2p_settlement.models.telegram_data import ROUTING_FIELDS, TelegramData

logger = logging.getLogger(__name__)

EVENT_TEMPLATES = {
    "item_queued": "New P2P {side} queued: {amount} via {payment_method} (item {item_id})",
    "match_found": (
        "P2P match found: {amount} via {payment_method}, score {score}. "
        "Awaiting admin approval (match {match_id})"
    ),
    "match_approved": "P2P match {match_id} approved. Amount: {amount}",
    "match_rejected": "P2P match {match_id} rejected: {reason}",
    "item_cancelled": "P2P queue item {item_id} cancelled: {reason}",
    "settlement_completed": "P2P settlement completed for match {match_id}. Amount: {amount}",
    "settlement_failed": (
        "P2P SETTLEMENT FAILED for match {match_id} ({amount}): {reason}. "
        "Manual reconciliation required."
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


class NotificationService:
    """Delivers queue notifications via the Telegram Bot API."""

    def __init__(self):
        self.api_url = settings.TELEGRAM_API_URL
        self.bot_token = settings.TELEGRAM_BOT_TOKEN
        self.operator_chat_id = settings.TELEGRAM_OPERATOR_CHAT_ID

    @staticmethod
    def format_message(event: str, payload: dict) -> str:
        template = EVENT_TEMPLATES.get(event, "P2P queue event {event}")
        return template.format_map(_Blank(payload, event=event))

    async def send_telegram(self, chat_id: str, text: str) -> dict:
        """Send a text message; returns a mock result when no bot token is set."""
        if not self.bot_token:
            logger.debug("Telegram not configured; would send to %s: %s", chat_id, text)
            return {"chat_id": chat_id, "channel": "telegram", "status": "not_configured"}

        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(
                f"{self.api_url}/bot{self.bot_token}/sendMessage",
                json={"chat_id": chat_id, "text": text},
            )
            resp.raise_for_status()
        return {"chat_id": chat_id, "channel": "telegram", "status": "sent"}

    async def notify_queue_event(
        self,
        event: str,
        payload: dict,
        chat_ids: list[str] | None = None,
    ) -> list[dict]:
        """
        Send *event* to every routed chat plus the operator chat.

        A failure on one chat is logged and does not stop delivery to
        the others.
        """
        text = self.format_message(event, payload)
        targets: list[str] = []
        for chat_id in [*(chat_ids or []), self.operator_chat_id]:
            if chat_id and chat_id not in targets:
                targets.append(chat_id)

        results = []
        for chat_id in targets:
            try:
                results.append(await self.send_telegram(chat_id, text))
            except httpx.HTTPError:
                logger.exception("Telegram delivery of %s to %s failed", event, chat_id)
                results.append({"chat_id": chat_id, "channel": "telegram", "status": "failed"})
        return results

    # ── routing table ───────────────────────────────────────────────────

    @staticmethod
    async def save_routing(
        session: AsyncSession,
        queue_item_id: str,
        routing: dict,
    ) -> TelegramData | None:
        """Store Telegram routing for a queue item; no-op when *routing* is empty."""
        fields = {key: routing.get(key) for key in ROUTING_FIELDS if routing.get(key)}
        if not fields:
            return None
        row = await session.merge(TelegramData(queue_item_id=queue_item_id, **fields))
        await session.flush()
        return row

    @staticmethod
    async def get_routing(session: AsyncSession, queue_item_id: str) -> TelegramData | None:
        return await session.get(TelegramData, queue_item_id)

    @staticmethod
    async def get_chat_targets(session: AsyncSession, queue_item_ids: list[str]) -> list[str]:
        """Chat ids routed for the given queue items, in item order."""
        if not queue_item_ids:
            return []
        result = await session.execute(
            select(TelegramData).where(TelegramData.queue_item_id.in_(queue_item_ids))
        )
        rows = {row.queue_item_id: row for row in result.scalars().all()}
        return [
            rows[item_id].chat_target
            for item_id in queue_item_ids
            if item_id in rows and rows[item_id].chat_target
        ]


notification_service = NotificationService()
