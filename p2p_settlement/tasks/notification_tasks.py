"""
Notification Celery tasks — background delivery of queue events.

``dispatch_queue_notification`` is the notifier the queue engine calls
after each committed state change.  It only enqueues the task; any error
reaching the broker is logged and swallowed so a notification problem can
never undo a queue transition.
"""

import asyncio
import logging

from p2p_settlement.tasks.celery_app import celery_app
from p2p_settlement.services.notification_service import notification_service

logger = logging.getLogger(__name__)


async def _deliver(event: str, payload: dict) -> list[dict]:
    from p2p_settlement.database import async_session

    async with async_session() as session:
        chat_ids = await notification_service.get_chat_targets(
            session, payload.get("item_ids", []),
        )
    return await notification_service.notify_queue_event(event, payload, chat_ids)


@celery_app.task(name="p2p_settlement.tasks.notification_tasks.send_queue_notification")
def send_queue_notification(event: str, payload: dict):
    """Deliver one queue event to its Telegram chats."""
    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(_deliver(event, payload))
        logger.info("Queue notification %s delivered to %d chats", event, len(result))
        return result
    finally:
        loop.close()


def dispatch_queue_notification(event: str, payload: dict) -> None:
    """Fire-and-forget hand-off to the Celery worker."""
    try:
        send_queue_notification.delay(event, payload)
    except Exception:
        logger.exception("Failed to dispatch %s notification", event)
