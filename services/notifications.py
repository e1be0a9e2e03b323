from typing import List, Protocol
import logging

from pydantic import BaseModel
from redis import Redis

from models import MessageType

logger = logging.getLogger(__name__)


class MessageNotification(BaseModel):
    chatroom_id: int
    message_id: int
    sender_id: int
    recipient_ids: List[int]
    preview: str


class NotificationDispatcher(Protocol):
    def dispatch(self, notification: MessageNotification) -> None:
        ...


def build_preview(content: str, message_type: MessageType, length: int = 100) -> str:
    """Short text for push notifications about a message."""
    if message_type != MessageType.TEXT:
        label = message_type.value.replace("_", " ").lower()
        article = "an" if label[0] in "aeiou" else "a"
        return f"Sent {article} {label}"
    if len(content) <= length:
        return content
    return content[: max(length - 3, 0)].rstrip() + "..."


class RedisNotificationDispatcher:
    """Queue notifications on a Redis list for the push worker to consume."""

    def __init__(self, redis_client: Redis, queue: str):
        self.redis_client = redis_client
        self.queue = queue

    def dispatch(self, notification: MessageNotification) -> None:
        if not notification.recipient_ids:
            return
        self.redis_client.lpush(self.queue, notification.model_dump_json())
        logger.debug(
            f"Queued message notification for chatroom {notification.chatroom_id} "
            f"to {len(notification.recipient_ids)} recipients"
        )
