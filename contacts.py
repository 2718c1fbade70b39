"""
Public contact form and its admin triage queue.

Anyone may submit; everything else is admin only and enforced by main.py.
Submitting and responding return notifier.Email effects for the caller to dispatch.
"""

import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument

import notifier
from accounts import get_user, object_id
from database import collection, create_document, get_documents, paginate, pagination_meta, utcnow
from errors import InvalidAssignee, NotFound, ValidationError
from schemas import CONTACT_STATUSES, Contact, ContactNote, ContactResponse

logger = logging.getLogger(__name__)


def _get(contact_id: str) -> dict:
    contact = collection("contact").find_one({"_id": object_id(contact_id, "contact id")})
    if not contact:
        raise NotFound("Contact not found")
    return contact


def _update(contact: dict, update: dict) -> dict:
    update.setdefault("$set", {})["updated_at"] = utcnow()
    return collection("contact").find_one_and_update(
        {"_id": contact["_id"]},
        update,
        return_document=ReturnDocument.AFTER,
    )


def _note(content: str, admin: dict) -> dict:
    try:
        return ContactNote(content=content, added_by=str(admin["_id"]), added_at=utcnow()).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)


def public_contact(contact: dict) -> dict:
    response = contact.get("response")
    assignee = get_user(contact["assigned_to"]) if contact.get("assigned_to") else None
    return {
        "id": str(contact["_id"]),
        "name": contact.get("name"),
        "email": contact.get("email"),
        "subject": contact.get("subject"),
        "message": contact.get("message"),
        "category": contact.get("category"),
        "status": contact.get("status"),
        "priority": contact.get("priority"),
        "assigned_to": {"id": str(assignee["_id"]), "name": assignee.get("name"), "email": assignee.get("email")}
        if assignee else None,
        "response": response,
        "is_read": contact.get("is_read", False),
        "read_at": contact.get("read_at"),
        "tags": contact.get("tags", []),
        "notes": contact.get("notes", []),
        "created_at": contact.get("created_at"),
    }


def submit_contact(name: str, email: str, subject: str, message: str, category: str = "general",
                   ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Tuple[dict, List[notifier.Email]]:
    try:
        doc = Contact(
            name=name.strip(),
            email=email.lower(),
            subject=subject.strip(),
            message=message.strip(),
            category=category,
            ip_address=ip_address,
            user_agent=user_agent,
        ).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)
    contact = _get(create_document("contact", doc))
    logger.info("Contact form submitted by %s", contact["email"])
    return contact, [notifier.contact_confirmation_email(contact)]


def unread_count() -> int:
    return collection("contact").count_documents({"is_read": False, "status": {"$ne": "closed"}})


def contact_stats() -> dict:
    by_status = {
        row["_id"]: row["count"]
        for row in collection("contact").aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    }
    stats = {"total": collection("contact").count_documents({})}
    stats.update({s: by_status.get(s, 0) for s in CONTACT_STATUSES})
    stats["unread"] = collection("contact").count_documents({"is_read": False})
    return stats


def list_contacts(status: Optional[str] = None, category: Optional[str] = None, priority: Optional[str] = None,
                  is_read: Optional[bool] = None, page: int = 1, limit: int = 20) -> dict:
    query = {}
    if status:
        query["status"] = status
    if category:
        query["category"] = category
    if priority:
        query["priority"] = priority
    if is_read is not None:
        query["is_read"] = is_read
    page, skip, limit = paginate(page, limit)
    docs = get_documents("contact", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "contacts": [public_contact(c) for c in docs],
        "pagination": pagination_meta(page, limit, collection("contact").count_documents(query)),
    }


def get_contact(contact_id: str) -> dict:
    contact = _get(contact_id)
    if not contact.get("is_read"):
        contact = _update(contact, {"$set": {"is_read": True, "read_at": utcnow()}})
    return contact


def update_status(contact_id: str, status: str, admin: dict) -> dict:
    if status not in CONTACT_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    contact = _get(contact_id)
    return _update(contact, {
        "$set": {"status": status},
        "$push": {"notes": _note(f"Status updated to: {status}", admin)},
    })


def assign(contact_id: str, assignee_id: str, admin: dict) -> dict:
    contact = _get(contact_id)
    assignee = get_user(assignee_id)
    if not assignee or assignee.get("role") != "admin":
        raise InvalidAssignee()
    return _update(contact, {"$set": {"assigned_to": str(assignee["_id"])}})


def respond(contact_id: str, content: str, admin: dict) -> Tuple[dict, List[notifier.Email]]:
    contact = _get(contact_id)
    try:
        response = ContactResponse(
            content=(content or "").strip(),
            responded_by=str(admin["_id"]),
            responded_at=utcnow(),
        ).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)
    updated = _update(contact, {"$set": {"response": response, "status": "responded"}})
    logger.info("Contact %s answered by %s", updated["_id"], admin.get("email"))
    return updated, [notifier.contact_response_email(updated)]


def add_note(contact_id: str, content: str, admin: dict) -> dict:
    contact = _get(contact_id)
    return _update(contact, {"$push": {"notes": _note((content or "").strip(), admin)}})


def delete_contact(contact_id: str):
    contact = _get(contact_id)
    collection("contact").delete_one({"_id": contact["_id"]})
