from contextlib import contextmanager
from typing import Callable, Iterator, List, TypeVar
import logging

from prometheus_client import Counter
from sqlalchemy.engine import Engine
from sqlmodel import Session

from core.config import Settings, get_settings
from core.exceptions import Conflict, InvalidArgument, NotFound
from models import (
    Chatroom, ChatroomKind, ChatroomCreate, ChatroomPage, ChatroomParticipant,
    ChatroomPublic, ChatroomSummary, GroupSettingsUpdate, MessageCreate,
    MessagePage, MessagePublic, MessageType, ParticipantPublic, ReadReceipts,
)
from services.chatrooms import ChatroomRepo
from services.messages import MessageRepo
from services.notifications import MessageNotification, NotificationDispatcher, build_preview
from services.participants import ParticipantRepo
from services.permissions import PermissionGuard
from services.read_state import ReadStateTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

messages_sent_total = Counter(
    "chat_messages_sent_total",
    "Messages accepted by the chat service",
    ["message_type"]
)


def chatroom_public(chatroom: Chatroom, participants: List[ChatroomParticipant]) -> ChatroomPublic:
    return ChatroomPublic.model_validate(
        chatroom,
        update={"participants": [ParticipantPublic.model_validate(p) for p in participants]},
    )


class ChatService:
    """Entry point for every chat operation.

    Each public method takes the already-resolved ``user_id`` of the caller
    and runs as one transaction, permission checks included. Results are
    returned as public schemas so nothing outlives its session.
    """

    def __init__(
        self,
        engine: Engine,
        dispatcher: NotificationDispatcher | None = None,
        settings: Settings | None = None,
        chatrooms: ChatroomRepo | None = None,
        participants: ParticipantRepo | None = None,
        messages: MessageRepo | None = None,
        read_state: ReadStateTracker | None = None,
        guard: PermissionGuard | None = None,
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.chatrooms = chatrooms or ChatroomRepo()
        self.participants = participants or ParticipantRepo()
        self.messages = messages or MessageRepo(self.chatrooms, self.settings.MAX_MESSAGE_LENGTH)
        self.read_state = read_state or ReadStateTracker()
        self.guard = guard or PermissionGuard(self.chatrooms, self.participants)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    def _retry_on_conflict(self, operation: Callable[[Session], T], description: str) -> T:
        """Run ``operation`` in a fresh transaction, again if it lost a race."""
        attempts = max(self.settings.CONFLICT_RETRY_ATTEMPTS, 1)
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction() as session:
                    return operation(session)
            except Conflict as e:
                if attempt == attempts:
                    logger.error(f"{description} kept conflicting after {attempts} attempts")
                    raise
                logger.warning(f"{description} lost a race ({e.detail}), retrying")

    def _check_limit(self, limit: int, maximum: int) -> None:
        if not 1 <= limit <= maximum:
            raise InvalidArgument(f"limit must be between 1 and {maximum}")

    def _public(self, session: Session, chatroom: Chatroom) -> ChatroomPublic:
        return chatroom_public(chatroom, self.participants.list_active(session, chatroom.id))

    # Chatrooms

    def create_chatroom(self, user_id: int, data: ChatroomCreate) -> ChatroomPublic:
        if data.kind == ChatroomKind.DIRECT:
            if data.peer_id is None:
                raise InvalidArgument("peer_id is required for direct chatrooms")
            return self.create_direct(user_id, data.peer_id)
        return self.create_group(
            user_id, data.member_ids, data.name, data.description, data.image_url
        )

    def create_direct(self, user_id: int, peer_id: int) -> ChatroomPublic:
        """Idempotent: both users always converge on the same room."""
        def operation(session: Session) -> ChatroomPublic:
            chatroom = self.chatrooms.create_direct(session, user_id, peer_id)
            # A caller who left the conversation gets a fresh membership
            if not self.participants.is_active_participant(session, chatroom.id, user_id):
                self.participants.rejoin(session, chatroom.id, user_id)
            return self._public(session, chatroom)

        return self._retry_on_conflict(operation, f"direct chatroom for {user_id} and {peer_id}")

    def create_group(
        self,
        user_id: int,
        member_ids: List[int],
        name: str | None,
        description: str | None = None,
        image_url: str | None = None,
    ) -> ChatroomPublic:
        with self.transaction() as session:
            chatroom = self.chatrooms.create_group(
                session, user_id, member_ids, name, description, image_url
            )
            return self._public(session, chatroom)

    def get_chatroom(self, user_id: int, chatroom_id: int) -> ChatroomPublic:
        with self.transaction() as session:
            self.guard.require_active_participant(session, chatroom_id, user_id)
            chatroom = self.guard.require_chatroom(session, chatroom_id)
            return self._public(session, chatroom)

    def update_group_settings(
        self, user_id: int, chatroom_id: int, patch: GroupSettingsUpdate
    ) -> ChatroomPublic:
        with self.transaction() as session:
            chatroom = self.guard.require_group_admin(session, chatroom_id, user_id)
            chatroom = self.chatrooms.update_group_settings(session, chatroom, patch)
            logger.info(f"User {user_id} updated settings of chatroom {chatroom_id}")
            return self._public(session, chatroom)

    def list_chatrooms(
        self, user_id: int, limit: int = 20, cursor: str | None = None
    ) -> ChatroomPage:
        self._check_limit(limit, self.settings.CHATROOMS_PAGE_MAX)
        with self.transaction() as session:
            rooms, next_cursor = self.chatrooms.list_for_user(session, user_id, limit, cursor)
            unread = self.read_state.per_room_unread_counts(session, [r.id for r in rooms], user_id)

            summaries = []
            for room in rooms:
                active = self.participants.list_active(session, room.id)
                membership = next(p for p in active if p.user_id == user_id)
                last_message = self.messages.latest_visible(session, room.id, membership.joined_at)
                summaries.append(ChatroomSummary(
                    id=room.id,
                    kind=room.kind,
                    name=room.name,
                    description=room.description,
                    image_url=room.image_url,
                    last_activity_at=room.last_activity_at,
                    other_participants=[p.user_id for p in active if p.user_id != user_id],
                    last_message=MessagePublic.model_validate(last_message) if last_message else None,
                    unread_count=unread.get(room.id, 0),
                ))
            return ChatroomPage(chatrooms=summaries, next_cursor=next_cursor)

    # Messages

    def send_message(self, user_id: int, chatroom_id: int, data: MessageCreate) -> MessagePublic:
        with self.transaction() as session:
            self.guard.require_active_participant(session, chatroom_id, user_id)
            chatroom = self.guard.require_chatroom(session, chatroom_id, lock=True)
            message = self.messages.append(
                session,
                chatroom,
                user_id,
                data.content,
                data.message_type,
                media_url=data.media_url,
                shared_content_id=data.shared_content_id,
                link_preview=data.link_preview,
            )
            recipients = [
                p.user_id for p in self.participants.list_active(session, chatroom_id)
                if p.user_id != user_id
            ]
            result = MessagePublic.model_validate(message)

        messages_sent_total.labels(message_type=result.message_type.value).inc()
        self._notify(MessageNotification(
            chatroom_id=chatroom_id,
            message_id=result.id,
            sender_id=user_id,
            recipient_ids=recipients,
            preview=build_preview(
                result.content, result.message_type, self.settings.NOTIFICATION_PREVIEW_LENGTH
            ),
        ))
        return result

    def _notify(self, notification: MessageNotification) -> None:
        # The message is committed already, delivery problems only get logged
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.dispatch(notification)
        except Exception as e:
            logger.error(
                f"Failed to dispatch notification for message {notification.message_id}: {str(e)}"
            )

    def list_messages(
        self, user_id: int, chatroom_id: int, limit: int = 50, cursor: int | None = None
    ) -> MessagePage:
        """Page of messages since the caller joined, oldest first within the page."""
        self._check_limit(limit, self.settings.MESSAGES_PAGE_MAX)
        with self.transaction() as session:
            participant = self.guard.require_active_participant(session, chatroom_id, user_id)
            messages, next_cursor = self.messages.list(
                session, chatroom_id, participant.joined_at, limit, cursor
            )
            return MessagePage(
                messages=[MessagePublic.model_validate(m) for m in reversed(messages)],
                next_cursor=next_cursor,
            )

    def list_shared_media(
        self,
        user_id: int,
        chatroom_id: int,
        type_filter: MessageType | None = None,
        limit: int = 20,
        cursor: int | None = None,
    ) -> MessagePage:
        """Newest-first page of media and share messages."""
        self._check_limit(limit, self.settings.MEDIA_PAGE_MAX)
        with self.transaction() as session:
            participant = self.guard.require_active_participant(session, chatroom_id, user_id)
            messages, next_cursor = self.messages.list_by_type(
                session, chatroom_id, participant.joined_at, type_filter, limit, cursor
            )
            return MessagePage(
                messages=[MessagePublic.model_validate(m) for m in messages],
                next_cursor=next_cursor,
            )

    # Read state

    def mark_read(self, user_id: int, chatroom_id: int, message_ids: List[int] | None = None) -> int:
        with self.transaction() as session:
            participant = self.guard.require_active_participant(session, chatroom_id, user_id)
            # Wait for in-flight sends so the watermark covers only committed messages
            self.guard.require_chatroom(session, chatroom_id, lock=True)
            return self.read_state.mark_read(session, participant, message_ids)

    def unread_count(self, user_id: int) -> int:
        with self.transaction() as session:
            return self.read_state.unread_count(session, user_id)

    def per_room_unread_count(self, user_id: int, chatroom_id: int) -> int:
        with self.transaction() as session:
            self.guard.require_active_participant(session, chatroom_id, user_id)
            return self.read_state.per_room_unread_count(session, chatroom_id, user_id)

    def read_receipts(self, user_id: int, chatroom_id: int, message_id: int) -> ReadReceipts:
        with self.transaction() as session:
            participant = self.guard.require_active_participant(session, chatroom_id, user_id)
            message = self.messages.get_visible(
                session, chatroom_id, message_id, participant.joined_at
            )
            if message is None:
                raise NotFound("message not found")
            return ReadReceipts(
                message_id=message.id,
                read_by=self.read_state.read_receipts(session, message),
            )

    # Membership

    def add_participants(self, user_id: int, chatroom_id: int, user_ids: List[int]) -> int:
        def operation(session: Session) -> int:
            self.guard.require_group_admin(session, chatroom_id, user_id)
            return self.participants.add_participants(session, chatroom_id, user_ids)

        return self._retry_on_conflict(operation, f"adding participants to chatroom {chatroom_id}")

    def remove_participant(self, user_id: int, chatroom_id: int, target_id: int) -> bool:
        with self.transaction() as session:
            chatroom = self.guard.require_group_admin(session, chatroom_id, user_id)
            removed = self.participants.remove_participant(session, chatroom, target_id)
            if removed:
                logger.info(f"User {user_id} removed user {target_id} from chatroom {chatroom_id}")
            return removed

    def leave(self, user_id: int, chatroom_id: int) -> None:
        with self.transaction() as session:
            self.guard.require_active_participant(session, chatroom_id, user_id)
            chatroom = self.guard.require_chatroom(session, chatroom_id)
            self.participants.leave(session, chatroom, user_id)

    def promote(self, user_id: int, chatroom_id: int, target_id: int) -> None:
        with self.transaction() as session:
            self.guard.require_group_admin(session, chatroom_id, user_id)
            self.participants.promote(session, chatroom_id, target_id)
