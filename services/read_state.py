from typing import Dict, Iterable, List
import logging

from sqlalchemy import and_, or_, update
from sqlmodel import Session, func, select

from models import ChatroomParticipant, Message, utcnow

logger = logging.getLogger(__name__)


def _after_watermark():
    """Messages ordered after the joined participant's read watermark."""
    return or_(
        ChatroomParticipant.last_read_message_id == None,
        Message.created_at > ChatroomParticipant.last_read_at,
        and_(
            Message.created_at == ChatroomParticipant.last_read_at,
            Message.id > ChatroomParticipant.last_read_message_id,
        ),
    )


def _unread_for(user_id: int):
    """Criteria for messages unread by the active membership joined in the query.

    A message is unread when someone else sent it inside the member's
    visible window and it sorts after their read watermark.
    """
    return (
        ChatroomParticipant.user_id == user_id,
        ChatroomParticipant.left_at == None,
        Message.sender_id != user_id,
        Message.created_at >= ChatroomParticipant.joined_at,
        _after_watermark(),
    )


class ReadStateTracker:
    """Derives unread counts from messages and participant watermarks.

    Counts are computed at read time, there is no stored counter to drift.
    The watermark is the ``(created_at, id)`` key of the newest message the
    reader could see when marking, never the wall clock, so a message that
    commits after the mark stays unread. The per-message ``read_at`` flag is
    still maintained for clients that query whole-room read state, but the
    watermark is what counts.
    """

    def mark_read(
        self,
        session: Session,
        participant: ChatroomParticipant,
        message_ids: List[int] | None = None,
    ) -> int:
        """Flag unread messages from others and move the watermark to the newest one visible.

        ``message_ids=None`` flags every visible unread message, an empty list
        flags nothing. The watermark moves either way. Callers lock the
        chatroom row first so no send is half-way through.
        """
        newest = session.exec(
            select(Message)
            .where(
                Message.chatroom_id == participant.chatroom_id,
                Message.created_at >= participant.joined_at,
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        ).first()
        if newest is None:
            return 0

        flagged = 0
        if message_ids is None or message_ids:
            stmt = update(Message).where(
                Message.chatroom_id == participant.chatroom_id,
                Message.sender_id != participant.user_id,
                Message.read_at == None,
                Message.created_at >= participant.joined_at,
                or_(
                    Message.created_at < newest.created_at,
                    and_(Message.created_at == newest.created_at, Message.id <= newest.id),
                ),
            )
            if message_ids:
                stmt = stmt.where(Message.id.in_(message_ids))
            result = session.execute(
                stmt.values(read_at=utcnow()).execution_options(synchronize_session=False)
            )
            flagged = result.rowcount or 0

        participant.last_read_at = newest.created_at
        participant.last_read_message_id = newest.id
        session.add(participant)
        session.flush()
        return flagged

    def unread_count(self, session: Session, user_id: int) -> int:
        query = (
            select(func.count(Message.id))
            .select_from(Message)
            .join(ChatroomParticipant, ChatroomParticipant.chatroom_id == Message.chatroom_id)
            .where(*_unread_for(user_id))
        )
        return session.exec(query).one()

    def per_room_unread_count(self, session: Session, chatroom_id: int, user_id: int) -> int:
        query = (
            select(func.count(Message.id))
            .select_from(Message)
            .join(ChatroomParticipant, ChatroomParticipant.chatroom_id == Message.chatroom_id)
            .where(Message.chatroom_id == chatroom_id, *_unread_for(user_id))
        )
        return session.exec(query).one()

    def per_room_unread_counts(
        self, session: Session, chatroom_ids: Iterable[int], user_id: int
    ) -> Dict[int, int]:
        """Unread counts for several rooms in one query, for chatroom listings."""
        chatroom_ids = list(chatroom_ids)
        if not chatroom_ids:
            return {}
        rows = session.exec(
            select(Message.chatroom_id, func.count(Message.id))
            .select_from(Message)
            .join(ChatroomParticipant, ChatroomParticipant.chatroom_id == Message.chatroom_id)
            .where(Message.chatroom_id.in_(chatroom_ids), *_unread_for(user_id))
            .group_by(Message.chatroom_id)
        ).all()
        counts = {chatroom_id: 0 for chatroom_id in chatroom_ids}
        counts.update({chatroom_id: count for chatroom_id, count in rows})
        return counts

    def read_receipts(self, session: Session, message: Message) -> List[int]:
        """Active members, other than the sender, whose watermark covers the message."""
        return list(session.exec(
            select(ChatroomParticipant.user_id)
            .where(
                ChatroomParticipant.chatroom_id == message.chatroom_id,
                ChatroomParticipant.left_at == None,
                ChatroomParticipant.user_id != message.sender_id,
                ChatroomParticipant.joined_at <= message.created_at,
                or_(
                    ChatroomParticipant.last_read_at > message.created_at,
                    and_(
                        ChatroomParticipant.last_read_at == message.created_at,
                        ChatroomParticipant.last_read_message_id >= message.id,
                    ),
                ),
            )
            .order_by(ChatroomParticipant.user_id)
        ).all())
