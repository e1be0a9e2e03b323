import pytest
from sqlmodel import Session, select

from core.exceptions import NotFound, PermissionDenied
from models import ChatroomParticipant, Message, MessageCreate, utcnow

def send(chat_service, user_id, chatroom_id, content):
    return chat_service.send_message(user_id, chatroom_id, MessageCreate(content=content))

def test_unread_count_after_send(chat_service):
    room = chat_service.create_direct(1, 2)
    send(chat_service, 1, room.id, "hi")

    assert chat_service.unread_count(2) == 1
    assert chat_service.unread_count(1) == 0

def test_mark_read_resets_and_is_idempotent(chat_service):
    room = chat_service.create_direct(1, 2)
    send(chat_service, 1, room.id, "hi")

    assert chat_service.mark_read(2, room.id) == 1
    assert chat_service.unread_count(2) == 0

    assert chat_service.mark_read(2, room.id) == 0
    assert chat_service.unread_count(2) == 0

def test_mark_read_sets_legacy_flag_on_others_messages_only(chat_service, test_db_engine):
    room = chat_service.create_direct(1, 2)
    own = send(chat_service, 2, room.id, "mine")
    theirs = send(chat_service, 1, room.id, "theirs")

    chat_service.mark_read(2, room.id)

    with Session(test_db_engine) as session:
        assert session.get(Message, own.id).read_at is None
        assert session.get(Message, theirs.id).read_at is not None

def test_mark_read_specific_ids(chat_service, test_db_engine):
    room = chat_service.create_direct(1, 2)
    first = send(chat_service, 1, room.id, "one")
    second = send(chat_service, 1, room.id, "two")

    assert chat_service.mark_read(2, room.id, [first.id]) == 1

    with Session(test_db_engine) as session:
        assert session.get(Message, first.id).read_at is not None
        assert session.get(Message, second.id).read_at is None
    # The watermark moved past both messages
    assert chat_service.per_room_unread_count(2, room.id) == 0

def test_mark_read_with_empty_ids_still_advances_watermark(chat_service, test_db_engine):
    room = chat_service.create_direct(1, 2)
    message = send(chat_service, 1, room.id, "hi")

    assert chat_service.mark_read(2, room.id, []) == 0
    assert chat_service.unread_count(2) == 0
    with Session(test_db_engine) as session:
        assert session.get(Message, message.id).read_at is None

def test_mark_read_requires_active_participant(chat_service):
    room = chat_service.create_direct(1, 2)
    with pytest.raises(PermissionDenied):
        chat_service.mark_read(3, room.id)

def test_group_read_state_is_per_participant(chat_service, lunch_crew):
    send(chat_service, 1, lunch_crew.id, "where?")
    chat_service.mark_read(2, lunch_crew.id)

    assert chat_service.per_room_unread_count(2, lunch_crew.id) == 0
    assert chat_service.per_room_unread_count(3, lunch_crew.id) == 1
    assert chat_service.per_room_unread_count(1, lunch_crew.id) == 0

def test_unread_count_spans_rooms_and_ignores_left_ones(chat_service, lunch_crew):
    direct = chat_service.create_direct(2, 5)
    send(chat_service, 1, lunch_crew.id, "group hello")
    send(chat_service, 5, direct.id, "dm hello")
    send(chat_service, 5, direct.id, "dm again")

    assert chat_service.unread_count(2) == 3

    chat_service.leave(2, lunch_crew.id)
    assert chat_service.unread_count(2) == 2

def test_messages_before_join_are_not_unread(chat_service, lunch_crew):
    send(chat_service, 1, lunch_crew.id, "before you came")
    chat_service.add_participants(1, lunch_crew.id, [4])

    assert chat_service.unread_count(4) == 0
    send(chat_service, 2, lunch_crew.id, "hello newcomer")
    assert chat_service.unread_count(4) == 1

def test_read_receipts_follow_watermarks(chat_service, lunch_crew):
    message = send(chat_service, 1, lunch_crew.id, "where?")
    assert chat_service.read_receipts(1, lunch_crew.id, message.id).read_by == []

    chat_service.mark_read(3, lunch_crew.id)
    receipts = chat_service.read_receipts(2, lunch_crew.id, message.id)
    assert receipts.message_id == message.id
    assert receipts.read_by == [3]

def test_read_receipts_hide_messages_outside_window(chat_service, lunch_crew):
    old = send(chat_service, 1, lunch_crew.id, "old news")
    chat_service.add_participants(1, lunch_crew.id, [4])

    with pytest.raises(NotFound):
        chat_service.read_receipts(4, lunch_crew.id, old.id)
    with pytest.raises(NotFound):
        chat_service.read_receipts(1, lunch_crew.id, 9999)

def test_message_committed_after_mark_stays_unread(chat_service, test_db_engine):
    room = chat_service.create_direct(1, 2)
    seen = send(chat_service, 1, room.id, "first")
    stamped = utcnow()

    chat_service.mark_read(2, room.id)
    # A send stamped before the mark but committed after it
    with Session(test_db_engine) as session:
        session.add(Message(chatroom_id=room.id, sender_id=1, content="late", created_at=stamped))
        session.commit()

    assert chat_service.unread_count(2) == 1
    assert chat_service.per_room_unread_count(2, room.id) == 1
    with Session(test_db_engine) as session:
        participant = session.exec(
            select(ChatroomParticipant).where(
                ChatroomParticipant.chatroom_id == room.id,
                ChatroomParticipant.user_id == 2,
            )
        ).one()
        assert participant.last_read_message_id == seen.id

def test_mark_read_without_messages_leaves_watermark_unset(chat_service):
    room = chat_service.create_direct(1, 2)
    assert chat_service.mark_read(2, room.id) == 0

    send(chat_service, 1, room.id, "hi")
    assert chat_service.unread_count(2) == 1

def test_per_room_unread_count_requires_active_participant(chat_service, lunch_crew):
    with pytest.raises(PermissionDenied):
        chat_service.per_room_unread_count(4, lunch_crew.id)

    chat_service.leave(3, lunch_crew.id)
    with pytest.raises(PermissionDenied):
        chat_service.per_room_unread_count(3, lunch_crew.id)
