from .chat import (
    Chatroom, ChatroomParticipant, Message, ChatroomKind, MessageType,
    MEDIA_MESSAGE_TYPES, direct_pair_key, utcnow,
    LinkPreview, ParticipantPublic, ChatroomPublic, MessagePublic, MessagePage,
    ChatroomSummary, ChatroomPage, ChatroomCreate, MessageCreate,
    MarkReadRequest, ParticipantsAdd, GroupSettingsUpdate, ReadReceipts,
)
from .response import BasicResponse, AddedResponse, MarkReadResponse, UnreadCountResponse

__all__ = [
    "Chatroom", "ChatroomParticipant", "Message", "ChatroomKind", "MessageType",
    "MEDIA_MESSAGE_TYPES", "direct_pair_key", "utcnow",
    "LinkPreview", "ParticipantPublic", "ChatroomPublic", "MessagePublic", "MessagePage",
    "ChatroomSummary", "ChatroomPage", "ChatroomCreate", "MessageCreate",
    "MarkReadRequest", "ParticipantsAdd", "GroupSettingsUpdate", "ReadReceipts",
    "BasicResponse", "AddedResponse", "MarkReadResponse", "UnreadCountResponse",
]
