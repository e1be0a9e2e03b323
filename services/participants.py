from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.exceptions import Conflict, NotFound
from models import Chatroom, ChatroomParticipant, ChatroomKind, utcnow

logger = logging.getLogger(__name__)


class ParticipantRepo:
    """Membership records per chatroom.

    A user has at most one active record per chatroom. Leaving stamps
    ``left_at`` on that record and rejoining creates a new one, so the
    join history of a room is never rewritten.
    """

    def get_active(
        self, session: Session, chatroom_id: int, user_id: int
    ) -> Optional[ChatroomParticipant]:
        return session.exec(
            select(ChatroomParticipant).where(
                ChatroomParticipant.chatroom_id == chatroom_id,
                ChatroomParticipant.user_id == user_id,
                ChatroomParticipant.left_at == None,
            )
        ).first()

    def is_active_participant(self, session: Session, chatroom_id: int, user_id: int) -> bool:
        return self.get_active(session, chatroom_id, user_id) is not None

    def is_active_admin(self, session: Session, chatroom_id: int, user_id: int) -> bool:
        participant = self.get_active(session, chatroom_id, user_id)
        return participant is not None and participant.is_admin

    def list_active(self, session: Session, chatroom_id: int) -> List[ChatroomParticipant]:
        return list(session.exec(
            select(ChatroomParticipant)
            .where(
                ChatroomParticipant.chatroom_id == chatroom_id,
                ChatroomParticipant.left_at == None,
            )
            .order_by(ChatroomParticipant.joined_at, ChatroomParticipant.id)
        ).all())

    def add_participants(
        self, session: Session, chatroom_id: int, user_ids: Iterable[int]
    ) -> int:
        """Create memberships for users not already active; return how many."""
        active = {p.user_id for p in self.list_active(session, chatroom_id)}
        new_ids = [u for u in dict.fromkeys(user_ids) if u not in active]
        if not new_ids:
            return 0

        session.add_all(
            ChatroomParticipant(chatroom_id=chatroom_id, user_id=user_id, is_admin=False)
            for user_id in new_ids
        )
        try:
            session.flush()
        except IntegrityError as e:
            # Someone added one of these users between our read and insert
            raise Conflict(f"concurrent membership change in chatroom {chatroom_id}") from e

        logger.info(f"Added {len(new_ids)} participants to chatroom {chatroom_id}")
        return len(new_ids)

    def rejoin(self, session: Session, chatroom_id: int, user_id: int) -> ChatroomParticipant:
        participant = ChatroomParticipant(chatroom_id=chatroom_id, user_id=user_id)
        session.add(participant)
        try:
            session.flush()
        except IntegrityError as e:
            raise Conflict(f"user {user_id} already rejoined chatroom {chatroom_id}") from e
        return participant

    def remove_participant(
        self, session: Session, chatroom: Chatroom, user_id: int, at: datetime | None = None
    ) -> bool:
        """Mark the user's active membership as left. No-op when not active."""
        participant = self.get_active(session, chatroom.id, user_id)
        if participant is None:
            return False

        participant.left_at = at or utcnow()
        session.add(participant)
        session.flush()
        logger.info(f"User {user_id} left chatroom {chatroom.id}")

        if participant.is_admin and chatroom.kind == ChatroomKind.GROUP:
            self._ensure_admin(session, chatroom.id)
        return True

    def leave(self, session: Session, chatroom: Chatroom, user_id: int) -> bool:
        return self.remove_participant(session, chatroom, user_id)

    def promote(self, session: Session, chatroom_id: int, user_id: int) -> ChatroomParticipant:
        participant = self.get_active(session, chatroom_id, user_id)
        if participant is None:
            raise NotFound(f"user {user_id} is not a participant of chatroom {chatroom_id}")
        if not participant.is_admin:
            participant.is_admin = True
            session.add(participant)
            session.flush()
            logger.info(f"User {user_id} promoted to admin in chatroom {chatroom_id}")
        return participant

    def _ensure_admin(self, session: Session, chatroom_id: int) -> None:
        """Promote the longest-standing member when a group runs out of admins."""
        remaining = self.list_active(session, chatroom_id)
        if not remaining or any(p.is_admin for p in remaining):
            return
        successor = remaining[0]
        successor.is_admin = True
        session.add(successor)
        session.flush()
        logger.info(
            f"Chatroom {chatroom_id} lost its last admin, promoted user {successor.user_id}"
        )
