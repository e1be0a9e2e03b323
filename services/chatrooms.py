import base64
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.exceptions import Conflict, InvalidArgument
from models import (
    Chatroom, ChatroomParticipant, ChatroomKind, GroupSettingsUpdate, direct_pair_key
)

logger = logging.getLogger(__name__)


def encode_chatroom_cursor(chatroom: Chatroom) -> str:
    raw = f"{chatroom.last_activity_at.isoformat()}|{chatroom.id}"
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_chatroom_cursor(cursor: str) -> Tuple[datetime, int]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        activity_at, chatroom_id = raw.rsplit("|", 1)
        return datetime.fromisoformat(activity_at), int(chatroom_id)
    except ValueError as e:
        raise InvalidArgument("invalid cursor") from e


class ChatroomRepo:
    """Chatroom entities and the one-direct-room-per-pair invariant."""

    def get(self, session: Session, chatroom_id: int, lock: bool = False) -> Optional[Chatroom]:
        # SELECT ... FOR UPDATE serializes senders and readers of one room
        return session.get(Chatroom, chatroom_id, with_for_update=lock)

    def find_direct(self, session: Session, a: int, b: int) -> Optional[Chatroom]:
        return session.exec(
            select(Chatroom).where(
                Chatroom.kind == ChatroomKind.DIRECT,
                Chatroom.direct_key == direct_pair_key(a, b),
            )
        ).first()

    def create_direct(self, session: Session, a: int, b: int) -> Chatroom:
        """Return the direct room for {a, b}, creating it if needed.

        A concurrent creator may win the insert; the unique ``direct_key``
        turns that into ``Conflict`` so the caller can re-read the winner.
        """
        if a == b:
            raise InvalidArgument("cannot start a direct chat with yourself")

        existing = self.find_direct(session, a, b)
        if existing:
            return existing

        chatroom = Chatroom(kind=ChatroomKind.DIRECT, direct_key=direct_pair_key(a, b))
        chatroom.participants = [
            ChatroomParticipant(user_id=a),
            ChatroomParticipant(user_id=b),
        ]
        session.add(chatroom)
        try:
            session.flush()
        except IntegrityError as e:
            raise Conflict(f"direct chatroom for {direct_pair_key(a, b)} already exists") from e

        logger.info(f"Created direct chatroom {chatroom.id} for users {a} and {b}")
        return chatroom

    def create_group(
        self,
        session: Session,
        creator_id: int,
        member_ids: List[int],
        name: str | None,
        description: str | None = None,
        image_url: str | None = None,
    ) -> Chatroom:
        members = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        if not members:
            raise InvalidArgument("a group needs at least one member besides the creator")
        if not name or not name.strip():
            raise InvalidArgument("name is required for group chatrooms")

        chatroom = Chatroom(
            kind=ChatroomKind.GROUP,
            name=name.strip(),
            description=description,
            image_url=image_url,
        )
        chatroom.participants = [ChatroomParticipant(user_id=creator_id, is_admin=True)] + [
            ChatroomParticipant(user_id=member_id, is_admin=False) for member_id in members
        ]
        session.add(chatroom)
        session.flush()

        logger.info(f"Created group chatroom {chatroom.id} with {len(members) + 1} participants")
        return chatroom

    def update_group_settings(
        self, session: Session, chatroom: Chatroom, patch: GroupSettingsUpdate
    ) -> Chatroom:
        if patch.name is not None:
            if not patch.name.strip():
                raise InvalidArgument("group name cannot be empty")
            chatroom.name = patch.name.strip()
        if patch.description is not None:
            chatroom.description = patch.description
        if patch.image_url is not None:
            chatroom.image_url = patch.image_url
        session.add(chatroom)
        session.flush()
        return chatroom

    def touch(self, session: Session, chatroom: Chatroom, at: datetime) -> None:
        chatroom.last_activity_at = at
        session.add(chatroom)

    def list_for_user(
        self, session: Session, user_id: int, limit: int, cursor: str | None = None
    ) -> Tuple[List[Chatroom], str | None]:
        """Rooms the user is active in, most recently active first.

        The cursor carries the ``(last_activity_at, id)`` key of the last room
        served, so rooms that get new messages between pages are neither
        repeated nor skipped.
        """
        query = (
            select(Chatroom)
            .join(ChatroomParticipant, ChatroomParticipant.chatroom_id == Chatroom.id)
            .where(
                ChatroomParticipant.user_id == user_id,
                ChatroomParticipant.left_at == None,
            )
        )
        if cursor is not None:
            activity_at, chatroom_id = decode_chatroom_cursor(cursor)
            query = query.where(
                or_(
                    Chatroom.last_activity_at < activity_at,
                    and_(
                        Chatroom.last_activity_at == activity_at,
                        Chatroom.id < chatroom_id,
                    ),
                )
            )

        rooms = list(session.exec(
            query.order_by(Chatroom.last_activity_at.desc(), Chatroom.id.desc()).limit(limit + 1)
        ).all())

        next_cursor = None
        if len(rooms) > limit:
            rooms = rooms[:limit]
            next_cursor = encode_chatroom_cursor(rooms[-1])
        return rooms, next_cursor
