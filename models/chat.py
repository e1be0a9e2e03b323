from sqlmodel import SQLModel, Field, Relationship, Column
from sqlalchemy import JSON, Index, text
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatroomKind(str, Enum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"
    POST_SHARE = "POST_SHARE"
    PLACE_SHARE = "PLACE_SHARE"
    LINK_SHARE = "LINK_SHARE"


MEDIA_MESSAGE_TYPES = [t for t in MessageType if t is not MessageType.TEXT]


def direct_pair_key(a: int, b: int) -> str:
    """Canonical key for the unordered pair {a, b}."""
    low, high = sorted((a, b))
    return f"{low}:{high}"


class Chatroom(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    kind: ChatroomKind = Field(default=ChatroomKind.DIRECT)
    name: str | None = Field(default=None)
    description: str | None = Field(default=None)
    image_url: str | None = Field(default=None)
    # Set for DIRECT rooms only; NULLs never collide under the unique index
    direct_key: str | None = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow, index=True)

    participants: List["ChatroomParticipant"] = Relationship(back_populates="chatroom")


class ChatroomParticipant(SQLModel, table=True):
    __table_args__ = (
        # One active membership per chatroom and user; LEFT records are history
        Index(
            "uq_chatroomparticipant_active",
            "chatroom_id",
            "user_id",
            unique=True,
            sqlite_where=text("left_at IS NULL"),
            postgresql_where=text("left_at IS NULL"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    chatroom_id: int = Field(foreign_key="chatroom.id", index=True)
    user_id: int = Field(index=True)
    joined_at: datetime = Field(default_factory=utcnow)
    left_at: datetime | None = Field(default=None)
    is_admin: bool = Field(default=False)
    # Read watermark: key of the newest message seen, NULL until first read
    last_read_at: datetime | None = Field(default=None)
    last_read_message_id: int | None = Field(default=None)

    chatroom: Chatroom = Relationship(back_populates="participants")

    @property
    def is_active(self) -> bool:
        return self.left_at is None


class Message(SQLModel, table=True):
    __table_args__ = (
        Index("ix_message_chatroom_order", "chatroom_id", "created_at", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    chatroom_id: int = Field(foreign_key="chatroom.id")
    sender_id: int = Field(index=True)
    content: str
    message_type: MessageType = Field(default=MessageType.TEXT)
    media_url: str | None = Field(default=None)
    share_metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        sa_column=Column("metadata", JSON)
    )
    created_at: datetime = Field(default_factory=utcnow)
    read_at: datetime | None = Field(default=None)  # legacy whole-room read flag


# Request and response schemas

class LinkPreview(SQLModel):
    title: str
    url: str
    description: str | None = None
    image_url: str | None = None


class ParticipantPublic(SQLModel):
    user_id: int
    joined_at: datetime
    left_at: datetime | None = None
    is_admin: bool
    last_read_at: datetime | None = None
    last_read_message_id: int | None = None


class ChatroomPublic(SQLModel):
    id: int
    kind: ChatroomKind
    name: str | None = None
    description: str | None = None
    image_url: str | None = None
    created_at: datetime
    last_activity_at: datetime
    participants: List[ParticipantPublic] = []


class MessagePublic(SQLModel):
    id: int
    chatroom_id: int
    sender_id: int
    content: str
    message_type: MessageType
    media_url: str | None = None
    share_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    read_at: datetime | None = None


class MessagePage(SQLModel):
    messages: List[MessagePublic]
    next_cursor: int | None = None


class ChatroomSummary(SQLModel):
    id: int
    kind: ChatroomKind
    name: str | None = None
    description: str | None = None
    image_url: str | None = None
    last_activity_at: datetime
    other_participants: List[int] = []
    last_message: MessagePublic | None = None
    unread_count: int = 0


class ChatroomPage(SQLModel):
    chatrooms: List[ChatroomSummary]
    next_cursor: str | None = None


class ChatroomCreate(SQLModel):
    kind: ChatroomKind = ChatroomKind.DIRECT
    peer_id: int | None = None  # DIRECT
    member_ids: List[int] = []  # GROUP
    name: str | None = None
    description: str | None = None
    image_url: str | None = None


class MessageCreate(SQLModel):
    content: str
    message_type: MessageType = MessageType.TEXT
    media_url: str | None = None
    shared_content_id: str | None = None  # post/place shares
    link_preview: LinkPreview | None = None  # link shares


class MarkReadRequest(SQLModel):
    message_ids: List[int] | None = None


class ParticipantsAdd(SQLModel):
    user_ids: List[int]


class GroupSettingsUpdate(SQLModel):
    name: str | None = None
    description: str | None = None
    image_url: str | None = None


class ReadReceipts(SQLModel):
    message_id: int
    read_by: List[int]
