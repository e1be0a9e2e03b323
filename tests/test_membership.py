import pytest
from sqlmodel import Session, select

from core.exceptions import InvalidState, NotFound, PermissionDenied
from models import ChatroomParticipant, MessageCreate

def send(chat_service, user_id, chatroom_id, content):
    return chat_service.send_message(user_id, chatroom_id, MessageCreate(content=content))

def active_members(chat_service, chatroom_id, as_user=1):
    room = chat_service.get_chatroom(as_user, chatroom_id)
    return {p.user_id: p.is_admin for p in room.participants}

def test_leave_then_rejoin_only_sees_new_messages(chat_service, lunch_crew):
    send(chat_service, 1, lunch_crew.id, "before")
    chat_service.leave(3, lunch_crew.id)
    send(chat_service, 1, lunch_crew.id, "while away")

    with pytest.raises(PermissionDenied):
        chat_service.list_messages(3, lunch_crew.id)

    assert chat_service.add_participants(1, lunch_crew.id, [3]) == 1
    send(chat_service, 2, lunch_crew.id, "welcome back")

    page = chat_service.list_messages(3, lunch_crew.id)
    assert [m.content for m in page.messages] == ["welcome back"]

def test_rejoin_keeps_membership_history(chat_service, test_db_engine, lunch_crew):
    chat_service.leave(3, lunch_crew.id)
    chat_service.add_participants(1, lunch_crew.id, [3])

    with Session(test_db_engine) as session:
        records = session.exec(
            select(ChatroomParticipant).where(
                ChatroomParticipant.chatroom_id == lunch_crew.id,
                ChatroomParticipant.user_id == 3,
            ).order_by(ChatroomParticipant.id)
        ).all()
    assert len(records) == 2
    assert records[0].left_at is not None
    assert records[1].left_at is None

def test_add_participants_is_idempotent(chat_service, test_db_engine, lunch_crew):
    assert chat_service.add_participants(1, lunch_crew.id, [4, 5]) == 2
    assert chat_service.add_participants(1, lunch_crew.id, [4, 5, 6, 6]) == 1

    with Session(test_db_engine) as session:
        active = session.exec(
            select(ChatroomParticipant.user_id).where(
                ChatroomParticipant.chatroom_id == lunch_crew.id,
                ChatroomParticipant.left_at == None,
            )
        ).all()
    assert sorted(active) == [1, 2, 3, 4, 5, 6]

def test_add_participants_requires_admin_of_group(chat_service, lunch_crew):
    with pytest.raises(PermissionDenied):
        chat_service.add_participants(2, lunch_crew.id, [7])
    with pytest.raises(PermissionDenied):
        chat_service.add_participants(9, lunch_crew.id, [7])

def test_add_participants_to_direct_room_is_invalid(chat_service):
    room = chat_service.create_direct(1, 2)
    with pytest.raises(InvalidState):
        chat_service.add_participants(1, room.id, [3])

def test_remove_participant(chat_service, lunch_crew):
    assert chat_service.remove_participant(1, lunch_crew.id, 2) is True
    assert active_members(chat_service, lunch_crew.id) == {1: True, 3: False}

    # Removing someone who is not active is a no-op
    assert chat_service.remove_participant(1, lunch_crew.id, 2) is False
    assert chat_service.remove_participant(1, lunch_crew.id, 42) is False

def test_non_admin_group_mutations_are_denied(chat_service, lunch_crew):
    with pytest.raises(PermissionDenied):
        chat_service.remove_participant(2, lunch_crew.id, 3)
    with pytest.raises(PermissionDenied):
        chat_service.promote(2, lunch_crew.id, 3)

def test_removed_admin_loses_rights(chat_service, lunch_crew):
    chat_service.promote(1, lunch_crew.id, 2)
    chat_service.remove_participant(1, lunch_crew.id, 2)

    with pytest.raises(PermissionDenied):
        chat_service.add_participants(2, lunch_crew.id, [5])

def test_promote(chat_service, lunch_crew):
    chat_service.promote(1, lunch_crew.id, 2)
    assert active_members(chat_service, lunch_crew.id) == {1: True, 2: True, 3: False}

    # The new admin can now manage the group
    assert chat_service.add_participants(2, lunch_crew.id, [4]) == 1

def test_promote_unknown_target_is_not_found(chat_service, lunch_crew):
    with pytest.raises(NotFound):
        chat_service.promote(1, lunch_crew.id, 42)

    chat_service.leave(3, lunch_crew.id)
    with pytest.raises(NotFound):
        chat_service.promote(1, lunch_crew.id, 3)

def test_direct_room_group_operations_are_invalid(chat_service):
    room = chat_service.create_direct(1, 2)
    with pytest.raises(InvalidState):
        chat_service.promote(1, room.id, 2)
    with pytest.raises(InvalidState):
        chat_service.remove_participant(2, room.id, 1)

def test_leave_requires_active_membership(chat_service, lunch_crew):
    chat_service.leave(2, lunch_crew.id)
    with pytest.raises(PermissionDenied):
        chat_service.leave(2, lunch_crew.id)

def test_leave_direct_room_keeps_other_member(chat_service):
    room = chat_service.create_direct(1, 2)
    send(chat_service, 1, room.id, "bye")
    chat_service.leave(1, room.id)

    room_for_peer = chat_service.get_chatroom(2, room.id)
    assert [p.user_id for p in room_for_peer.participants] == [2]
    assert [m.content for m in chat_service.list_messages(2, room.id).messages] == ["bye"]

def test_last_admin_leaving_promotes_longest_standing_member(chat_service, lunch_crew):
    chat_service.leave(1, lunch_crew.id)
    assert active_members(chat_service, lunch_crew.id, as_user=2) == {2: True, 3: False}

def test_admin_leaving_with_another_admin_promotes_nobody(chat_service, lunch_crew):
    chat_service.promote(1, lunch_crew.id, 3)
    chat_service.leave(1, lunch_crew.id)
    assert active_members(chat_service, lunch_crew.id, as_user=2) == {2: False, 3: True}
