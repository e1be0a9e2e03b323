from fastapi import APIRouter, Depends, Query, status
import logging

from models import (
    ChatroomCreate, ChatroomPage, ChatroomPublic, GroupSettingsUpdate, MarkReadRequest,
    MessageCreate, MessagePage, MessagePublic, MessageType, ParticipantsAdd, ReadReceipts,
    BasicResponse, AddedResponse, MarkReadResponse, UnreadCountResponse,
)
from dependencies import ChatServiceDep, CurrentUserId, rate_limit
from core.config import get_settings

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)


@router.post("/rooms", response_model=ChatroomPublic, status_code=status.HTTP_201_CREATED)
def create_chatroom(
    data: ChatroomCreate,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> ChatroomPublic:
    """Create a group, or open the direct chatroom with another user.

    Direct chatrooms are unique per pair of users: asking again, from either
    side, returns the same room.
    """
    return chat.create_chatroom(user_id, data)

@router.get("/rooms", response_model=ChatroomPage)
def list_chatrooms(
    chat: ChatServiceDep,
    user_id: CurrentUserId,
    limit: int = Query(20, ge=1, le=settings.CHATROOMS_PAGE_MAX),
    cursor: str | None = None,
) -> ChatroomPage:
    """List the current user's chatrooms, most recently active first"""
    return chat.list_chatrooms(user_id, limit, cursor)

@router.get("/rooms/{chatroom_id}", response_model=ChatroomPublic)
def get_chatroom(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> ChatroomPublic:
    return chat.get_chatroom(user_id, chatroom_id)

@router.patch("/rooms/{chatroom_id}", response_model=ChatroomPublic)
def update_group_settings(
    chatroom_id: int,
    patch: GroupSettingsUpdate,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> ChatroomPublic:
    """Rename a group or change its description or image (admins only)"""
    return chat.update_group_settings(user_id, chatroom_id, patch)

@router.post(
    "/rooms/{chatroom_id}/messages",
    response_model=MessagePublic,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("messages", settings.MESSAGES_PER_MINUTE))],
)
def send_message(
    chatroom_id: int,
    data: MessageCreate,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> MessagePublic:
    return chat.send_message(user_id, chatroom_id, data)

@router.get("/rooms/{chatroom_id}/messages", response_model=MessagePage)
def list_messages(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
    limit: int = Query(50, ge=1, le=settings.MESSAGES_PAGE_MAX),
    cursor: int | None = None,
) -> MessagePage:
    """Messages since the caller joined, oldest first within each page.

    Pass ``next_cursor`` back as ``cursor`` to fetch older messages.
    """
    return chat.list_messages(user_id, chatroom_id, limit, cursor)

@router.get("/rooms/{chatroom_id}/media", response_model=MessagePage)
def list_shared_media(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
    message_type: MessageType | None = None,
    limit: int = Query(20, ge=1, le=settings.MEDIA_PAGE_MAX),
    cursor: int | None = None,
) -> MessagePage:
    """Media and shared items, newest first"""
    return chat.list_shared_media(user_id, chatroom_id, message_type, limit, cursor)

@router.post("/rooms/{chatroom_id}/read", response_model=MarkReadResponse)
def mark_read(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
    data: MarkReadRequest | None = None,
) -> MarkReadResponse:
    """Mark messages as read; without ids, everything in the room"""
    message_ids = data.message_ids if data else None
    marked = chat.mark_read(user_id, chatroom_id, message_ids)
    return MarkReadResponse(message="Messages marked as read", marked=marked)

@router.get("/rooms/{chatroom_id}/messages/{message_id}/receipts", response_model=ReadReceipts)
def read_receipts(
    chatroom_id: int,
    message_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> ReadReceipts:
    return chat.read_receipts(user_id, chatroom_id, message_id)

@router.get("/rooms/{chatroom_id}/unread", response_model=UnreadCountResponse)
def room_unread_count(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=chat.per_room_unread_count(user_id, chatroom_id))

@router.post("/rooms/{chatroom_id}/participants", response_model=AddedResponse)
def add_participants(
    chatroom_id: int,
    data: ParticipantsAdd,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> AddedResponse:
    """Add users to a group (admins only). Users already in the group are skipped."""
    added = chat.add_participants(user_id, chatroom_id, data.user_ids)
    return AddedResponse(message="Participants added", added=added)

@router.delete("/rooms/{chatroom_id}/participants/{target_id}", response_model=BasicResponse)
def remove_participant(
    chatroom_id: int,
    target_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> BasicResponse:
    """Remove a user from a group (admins only)"""
    chat.remove_participant(user_id, chatroom_id, target_id)
    return BasicResponse(message="Participant removed")

@router.post("/rooms/{chatroom_id}/leave", response_model=BasicResponse)
def leave_chatroom(
    chatroom_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> BasicResponse:
    chat.leave(user_id, chatroom_id)
    return BasicResponse(message="Left chatroom")

@router.post("/rooms/{chatroom_id}/admins/{target_id}", response_model=BasicResponse)
def promote_participant(
    chatroom_id: int,
    target_id: int,
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> BasicResponse:
    """Make another participant an admin (admins only)"""
    chat.promote(user_id, chatroom_id, target_id)
    return BasicResponse(message="Participant promoted to admin")

@router.get("/unread", response_model=UnreadCountResponse)
def unread_count(
    chat: ChatServiceDep,
    user_id: CurrentUserId,
) -> UnreadCountResponse:
    """Unread messages across all of the user's chatrooms, for badges"""
    return UnreadCountResponse(unread_count=chat.unread_count(user_id))
