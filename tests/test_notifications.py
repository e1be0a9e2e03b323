import json

from models import MessageType
from services.notifications import MessageNotification, RedisNotificationDispatcher, build_preview


class FakeRedis:
    def __init__(self):
        self.lists = {}

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)


def make_notification(recipients):
    return MessageNotification(
        chatroom_id=1, message_id=10, sender_id=1, recipient_ids=recipients, preview="hi"
    )

def test_build_preview_for_text():
    assert build_preview("hello", MessageType.TEXT) == "hello"
    assert build_preview("a" * 20, MessageType.TEXT, length=10) == "aaaaaaa..."

def test_build_preview_for_media():
    assert build_preview("caption", MessageType.IMAGE) == "Sent an image"
    assert build_preview("look", MessageType.POST_SHARE) == "Sent a post share"

def test_redis_dispatcher_queues_json():
    redis = FakeRedis()
    RedisNotificationDispatcher(redis, "chat:notifications").dispatch(make_notification([2, 3]))

    queued = redis.lists["chat:notifications"]
    assert len(queued) == 1
    payload = json.loads(queued[0])
    assert payload["recipient_ids"] == [2, 3]
    assert payload["message_id"] == 10

def test_redis_dispatcher_skips_empty_recipients():
    redis = FakeRedis()
    RedisNotificationDispatcher(redis, "chat:notifications").dispatch(make_notification([]))
    assert redis.lists == {}
