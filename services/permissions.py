from sqlmodel import Session

from core.exceptions import InvalidState, NotFound, PermissionDenied
from models import Chatroom, ChatroomParticipant, ChatroomKind
from services.chatrooms import ChatroomRepo
from services.participants import ParticipantRepo


class PermissionGuard:
    """Membership and admin predicates checked before mutations.

    Call these with the same session as the mutation they guard so the check
    and the write see the same membership state.
    """

    def __init__(self, chatrooms: ChatroomRepo, participants: ParticipantRepo):
        self.chatrooms = chatrooms
        self.participants = participants

    def require_chatroom(self, session: Session, chatroom_id: int, lock: bool = False) -> Chatroom:
        chatroom = self.chatrooms.get(session, chatroom_id, lock=lock)
        if chatroom is None:
            raise NotFound("chatroom not found")
        return chatroom

    def require_active_participant(
        self, session: Session, chatroom_id: int, user_id: int
    ) -> ChatroomParticipant:
        participant = self.participants.get_active(session, chatroom_id, user_id)
        if participant is None:
            raise PermissionDenied("not a participant")
        return participant

    def require_active_admin(
        self, session: Session, chatroom_id: int, user_id: int
    ) -> ChatroomParticipant:
        participant = self.participants.get_active(session, chatroom_id, user_id)
        if participant is None or not participant.is_admin:
            raise PermissionDenied("must be admin")
        return participant

    def require_group(self, chatroom: Chatroom) -> None:
        if chatroom.kind != ChatroomKind.GROUP:
            raise InvalidState("operation not valid for direct messages")

    def require_group_admin(self, session: Session, chatroom_id: int, user_id: int) -> Chatroom:
        """Member first, then room kind, then admin flag."""
        participant = self.require_active_participant(session, chatroom_id, user_id)
        chatroom = self.require_chatroom(session, participant.chatroom_id)
        self.require_group(chatroom)
        self.require_active_admin(session, chatroom_id, user_id)
        return chatroom
