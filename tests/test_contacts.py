import pytest

import contacts
from errors import InvalidAssignee, NotFound, ValidationError


def _submit(**kwargs):
    fields = dict(name="Ana Park", email="Ana@Example.com", subject="Question about permits",
                  message="How do I request a block party permit?")
    fields.update(kwargs)
    return contacts.submit_contact(**fields)


def test_submit_contact_sends_confirmation():
    contact, effects = _submit(category="support", ip_address="10.0.0.1")
    assert contact["email"] == "ana@example.com"
    assert contact["status"] == "new"
    assert contact["is_read"] is False
    assert contact["ip_address"] == "10.0.0.1"
    assert [(e.to, e.subject) for e in effects] == [("ana@example.com", "Thank you for contacting CivicConnect")]


@pytest.mark.parametrize("field,value", [("subject", "Hi"), ("message", "Too short"), ("category", "spam")])
def test_submit_contact_validation(field, value):
    with pytest.raises(ValidationError):
        _submit(**{field: value})


def test_reading_marks_contact_read():
    contact, _ = _submit()
    assert contacts.unread_count() == 1
    opened = contacts.get_contact(str(contact["_id"]))
    assert opened["is_read"] is True
    assert opened["read_at"] is not None
    assert contacts.unread_count() == 0


def test_status_change_adds_note(admin):
    contact, _ = _submit()
    updated = contacts.update_status(str(contact["_id"]), "in_progress", admin)
    assert updated["status"] == "in_progress"
    assert [n["content"] for n in updated["notes"]] == ["Status updated to: in_progress"]
    assert updated["notes"][0]["added_by"] == str(admin["_id"])
    with pytest.raises(ValidationError):
        contacts.update_status(str(contact["_id"]), "archived", admin)


def test_respond_emails_the_sender(admin):
    contact, _ = _submit()
    updated, effects = contacts.respond(str(contact["_id"]), "Use the events form on our website.", admin)
    assert updated["status"] == "responded"
    assert updated["response"]["responded_by"] == str(admin["_id"])
    assert [(e.to, e.subject) for e in effects] == [("ana@example.com", "Re: Question about permits")]
    assert "Use the events form" in effects[0].text
    with pytest.raises(ValidationError):
        contacts.respond(str(contact["_id"]), "ok", admin)


def test_assign_and_notes(admin, citizen):
    contact, _ = _submit()
    with pytest.raises(InvalidAssignee):
        contacts.assign(str(contact["_id"]), str(citizen["_id"]), admin)
    assigned = contacts.assign(str(contact["_id"]), str(admin["_id"]), admin)
    assert assigned["assigned_to"] == str(admin["_id"])

    noted = contacts.add_note(str(contact["_id"]), "Called them back", admin)
    assert noted["notes"][-1]["content"] == "Called them back"
    assert contacts.public_contact(noted)["assigned_to"]["email"] == "admin@city.gov"


def test_stats_list_and_delete(admin):
    first, _ = _submit()
    _submit(email="bo@example.com", category="feedback")
    contacts.update_status(str(first["_id"]), "closed", admin)

    stats = contacts.contact_stats()
    assert stats["total"] == 2
    assert stats["new"] == 1
    assert stats["closed"] == 1
    assert stats["unread"] == 2
    assert contacts.unread_count() == 1

    listing = contacts.list_contacts(category="feedback")
    assert [c["email"] for c in listing["contacts"]] == ["bo@example.com"]
    assert listing["pagination"]["total"] == 1

    contacts.delete_contact(str(first["_id"]))
    with pytest.raises(NotFound):
        contacts.get_contact(str(first["_id"]))
