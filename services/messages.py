from datetime import datetime
from typing import List, Optional, Sequence, Tuple
import logging

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from core.exceptions import InvalidArgument
from models import Chatroom, Message, MessageType, MEDIA_MESSAGE_TYPES, LinkPreview, utcnow
from services.chatrooms import ChatroomRepo

logger = logging.getLogger(__name__)


class MessageRepo:
    """Append-only message storage with keyset pagination.

    Messages are totally ordered by ``(created_at, id)``. Cursors are the id
    of the oldest message of the previous page and are exclusive.
    """

    def __init__(self, chatrooms: ChatroomRepo, max_length: int = 1000):
        self.chatrooms = chatrooms
        self.max_length = max_length

    def append(
        self,
        session: Session,
        chatroom: Chatroom,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_url: str | None = None,
        shared_content_id: str | None = None,
        link_preview: LinkPreview | None = None,
    ) -> Message:
        """Store a message and bump the room's activity in the same transaction.

        The caller must already have checked that ``sender_id`` is an active
        participant of ``chatroom``.
        """
        if not content or len(content) > self.max_length:
            raise InvalidArgument(
                f"content must be between 1 and {self.max_length} characters"
            )
        if shared_content_id and link_preview:
            raise InvalidArgument("a message can carry a shared item or a link preview, not both")

        share_metadata = None
        if shared_content_id:
            share_metadata = {"shared_content_id": shared_content_id}
        elif link_preview:
            share_metadata = {"link_preview": link_preview.model_dump(exclude_none=True)}

        now = utcnow()
        message = Message(
            chatroom_id=chatroom.id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            media_url=media_url,
            share_metadata=share_metadata,
            created_at=now,
        )
        session.add(message)
        self.chatrooms.touch(session, chatroom, now)
        session.flush()
        return message

    def list(
        self,
        session: Session,
        chatroom_id: int,
        since: datetime,
        limit: int,
        cursor: int | None = None,
        types: Optional[Sequence[MessageType]] = None,
    ) -> Tuple[List[Message], int | None]:
        """Newest-first page of messages created at or after ``since``."""
        query = select(Message).where(
            Message.chatroom_id == chatroom_id,
            Message.created_at >= since,
        )
        if types:
            query = query.where(Message.message_type.in_(list(types)))
        if cursor is not None:
            anchor = session.get(Message, cursor)
            if anchor is None or anchor.chatroom_id != chatroom_id:
                raise InvalidArgument("invalid cursor")
            query = query.where(
                or_(
                    Message.created_at < anchor.created_at,
                    and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
                )
            )

        # One extra row tells us whether another page exists
        messages = list(session.exec(
            query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1)
        ).all())

        next_cursor = None
        if len(messages) > limit:
            messages = messages[:limit]
            next_cursor = messages[-1].id
        return messages, next_cursor

    def list_by_type(
        self,
        session: Session,
        chatroom_id: int,
        since: datetime,
        type_filter: MessageType | None,
        limit: int,
        cursor: int | None = None,
    ) -> Tuple[List[Message], int | None]:
        types = [type_filter] if type_filter else MEDIA_MESSAGE_TYPES
        return self.list(session, chatroom_id, since, limit, cursor, types=types)

    def get_visible(
        self, session: Session, chatroom_id: int, message_id: int, since: datetime
    ) -> Optional[Message]:
        return session.exec(
            select(Message).where(
                Message.id == message_id,
                Message.chatroom_id == chatroom_id,
                Message.created_at >= since,
            )
        ).first()

    def latest_visible(
        self, session: Session, chatroom_id: int, since: datetime
    ) -> Optional[Message]:
        return session.exec(
            select(Message)
            .where(Message.chatroom_id == chatroom_id, Message.created_at >= since)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        ).first()
