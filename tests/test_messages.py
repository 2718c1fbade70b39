import pytest

import messages
from errors import Forbidden, NotFound, ValidationError


def test_send_read_and_reply(citizen, admin):
    sent = messages.send_message(citizen, str(admin["_id"]), "Broken light", "The light on 5th is out")
    assert messages.unread_count(admin) == 1
    assert messages.unread_count(citizen) == 0

    opened = messages.get_message(str(sent["_id"]), admin)
    assert opened["is_read"] is True
    assert opened["read_at"] is not None
    assert messages.unread_count(admin) == 0

    answer = messages.reply(str(sent["_id"]), admin, "Crew is on the way")
    assert answer["subject"] == "Re: Broken light"
    assert answer["recipient_id"] == str(citizen["_id"])
    assert answer["reply_to"] == str(sent["_id"])

    again = messages.reply(str(answer["_id"]), citizen, "Thanks")
    assert again["subject"] == "Re: Broken light"


def test_sender_reading_does_not_mark_read(citizen, admin):
    sent = messages.send_message(citizen, str(admin["_id"]), "Hello", "Hi there")
    assert messages.get_message(str(sent["_id"]), citizen)["is_read"] is False


def test_only_participants_see_a_message(citizen, other_citizen, admin):
    sent = messages.send_message(citizen, str(admin["_id"]), "Hello", "Hi there")
    with pytest.raises(Forbidden):
        messages.get_message(str(sent["_id"]), other_citizen)
    with pytest.raises(Forbidden):
        messages.reply(str(sent["_id"]), citizen, "Replying to myself")
    with pytest.raises(Forbidden):
        messages.mark_read(str(sent["_id"]), citizen)


def test_send_to_admin(citizen, admin):
    sent = messages.send_to_admin(citizen, "Question", "Who fixes potholes?")
    assert sent["recipient_id"] == str(admin["_id"])


def test_send_to_admin_without_admin(citizen):
    with pytest.raises(NotFound):
        messages.send_to_admin(citizen, "Question", "Anyone there?")


def test_message_validation(citizen, admin):
    with pytest.raises(ValidationError):
        messages.send_message(citizen, str(admin["_id"]), "", "No subject")
    with pytest.raises(NotFound):
        messages.send_message(citizen, "0" * 24, "Hello", "Nobody home")
    with pytest.raises(NotFound):
        messages.send_message(citizen, str(admin["_id"]), "Hello", "About a report", related_report="0" * 24)


def test_delete_is_soft(citizen, admin, db):
    sent = messages.send_message(citizen, str(admin["_id"]), "Hello", "Hi there")
    messages.delete(str(sent["_id"]), citizen)
    with pytest.raises(NotFound):
        messages.get_message(str(sent["_id"]), admin)
    assert db["message"].find_one({"_id": sent["_id"]})["is_deleted"] is True
    assert messages.unread_count(admin) == 0


def test_archive(citizen, admin):
    sent = messages.send_message(citizen, str(admin["_id"]), "Hello", "Hi there")
    archived = messages.archive(str(sent["_id"]), admin)
    assert archived["is_archived"] is True


def test_listing_and_conversation(citizen, other_citizen, admin):
    messages.send_message(citizen, str(admin["_id"]), "One", "First")
    messages.send_message(admin, str(citizen["_id"]), "Two", "Second")
    messages.send_message(other_citizen, str(admin["_id"]), "Three", "Third")

    mine = messages.list_messages(citizen)
    assert mine["pagination"]["total"] == 2
    assert mine["unread_count"] == 1

    thread = messages.conversation(citizen, str(admin["_id"]))
    assert sorted(m["subject"] for m in thread) == ["One", "Two"]

    everything = messages.list_all_messages()
    assert everything["pagination"]["total"] == 3
