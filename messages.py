"""
Citizen <-> administrator messaging. Messages are only ever soft deleted.
"""

from typing import Optional

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument

from accounts import get_user, object_id, public_user
from database import collection, create_document, get_documents, paginate, pagination_meta, utcnow
from errors import Forbidden, NotFound, ValidationError
from schemas import Message


def _get(message_id: str) -> dict:
    message = collection("message").find_one({"_id": object_id(message_id, "message id")})
    if not message or message.get("is_deleted"):
        raise NotFound("Message not found")
    return message


def _participant(message: dict, user: dict):
    user_id = str(user["_id"])
    return message.get("sender_id") == user_id, message.get("recipient_id") == user_id


def public_message(message: dict) -> dict:
    sender = get_user(message["sender_id"])
    recipient = get_user(message["recipient_id"])
    related = None
    if message.get("related_report"):
        report = collection("report").find_one(
            {"_id": object_id(message["related_report"])},
            {"report_id": 1, "title": 1, "status": 1},
        )
        if report:
            related = {"id": str(report["_id"]), "report_id": report.get("report_id"),
                       "title": report.get("title"), "status": report.get("status")}
    return {
        "id": str(message["_id"]),
        "sender": public_user(sender) if sender else None,
        "recipient": public_user(recipient) if recipient else None,
        "subject": message.get("subject"),
        "content": message.get("content"),
        "related_report": related,
        "is_read": message.get("is_read", False),
        "read_at": message.get("read_at"),
        "is_archived": message.get("is_archived", False),
        "priority": message.get("priority", "normal"),
        "message_type": message.get("message_type", "general"),
        "reply_to": message.get("reply_to"),
        "created_at": message.get("created_at"),
    }


def _create(data: dict) -> dict:
    try:
        doc = Message(**data).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)
    return collection("message").find_one({"_id": object_id(create_document("message", doc))})


def _check_related_report(related_report: Optional[str]):
    if related_report and not collection("report").find_one({"_id": object_id(related_report, "report id")}):
        raise NotFound("Related report not found")


def send_message(sender: dict, recipient_id: str, subject: str, content: str,
                 related_report: Optional[str] = None, priority: str = "normal",
                 message_type: str = "general") -> dict:
    recipient = get_user(recipient_id)
    if not recipient:
        raise NotFound("Recipient not found")
    _check_related_report(related_report)
    return _create({
        "sender_id": str(sender["_id"]),
        "recipient_id": str(recipient["_id"]),
        "subject": subject,
        "content": content,
        "related_report": related_report,
        "priority": priority,
        "message_type": message_type,
    })


def send_to_admin(sender: dict, subject: str, content: str, related_report: Optional[str] = None,
                  priority: str = "normal") -> dict:
    admin = collection("user").find_one({"role": "admin", "is_active": True}, sort=[("created_at", 1)])
    if not admin:
        raise NotFound("No admin available to receive messages")
    return send_message(sender, str(admin["_id"]), subject, content, related_report, priority)


def reply(message_id: str, user: dict, content: str) -> dict:
    original = _get(message_id)
    _, is_recipient = _participant(original, user)
    if not is_recipient:
        raise Forbidden("Not authorized to reply to this message")
    subject = original.get("subject", "")
    if not subject.startswith("Re: "):
        subject = f"Re: {subject}"
    return _create({
        "sender_id": str(user["_id"]),
        "recipient_id": original["sender_id"],
        "subject": subject[:200],
        "content": content,
        "related_report": original.get("related_report"),
        "priority": original.get("priority", "normal"),
        "message_type": original.get("message_type", "general"),
        "reply_to": str(original["_id"]),
    })


def get_message(message_id: str, user: dict) -> dict:
    message = _get(message_id)
    is_sender, is_recipient = _participant(message, user)
    if not is_sender and not is_recipient:
        raise Forbidden("Not authorized to view this message")
    if is_recipient and not message.get("is_read"):
        return mark_read(message_id, user)
    return message


def mark_read(message_id: str, user: dict) -> dict:
    message = _get(message_id)
    _, is_recipient = _participant(message, user)
    if not is_recipient:
        raise Forbidden("Not authorized to mark this message as read")
    if message.get("is_read"):
        return message
    now = utcnow()
    return collection("message").find_one_and_update(
        {"_id": message["_id"]},
        {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


def archive(message_id: str, user: dict) -> dict:
    message = _get(message_id)
    if not any(_participant(message, user)):
        raise Forbidden("Not authorized to archive this message")
    if message.get("is_archived"):
        return message
    now = utcnow()
    return collection("message").find_one_and_update(
        {"_id": message["_id"]},
        {"$set": {"is_archived": True, "archived_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


def delete(message_id: str, user: dict):
    message = _get(message_id)
    if not any(_participant(message, user)):
        raise Forbidden("Not authorized to delete this message")
    now = utcnow()
    collection("message").update_one(
        {"_id": message["_id"]},
        {"$set": {"is_deleted": True, "deleted_at": now, "updated_at": now}},
    )


def unread_count(user: dict) -> int:
    return collection("message").count_documents({
        "recipient_id": str(user["_id"]),
        "is_read": False,
        "is_deleted": False,
    })


def list_messages(user: dict, is_read: Optional[bool] = None, message_type: Optional[str] = None,
                  priority: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
    user_id = str(user["_id"])
    query = {"$or": [{"sender_id": user_id}, {"recipient_id": user_id}], "is_deleted": False}
    if is_read is not None:
        query["is_read"] = is_read
    if message_type:
        query["message_type"] = message_type
    if priority:
        query["priority"] = priority
    page, skip, limit = paginate(page, limit)
    docs = get_documents("message", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    total = collection("message").count_documents(query)
    return {
        "messages": [public_message(m) for m in docs],
        "pagination": pagination_meta(page, limit, total),
        "unread_count": unread_count(user),
    }


def conversation(user: dict, other_id: str, limit: int = 50) -> list:
    other = get_user(other_id)
    if not other:
        raise NotFound("User not found")
    a, b = str(user["_id"]), str(other["_id"])
    docs = get_documents(
        "message",
        {
            "$or": [
                {"sender_id": a, "recipient_id": b},
                {"sender_id": b, "recipient_id": a},
            ],
            "is_deleted": False,
        },
        limit=min(max(limit, 1), 200),
        sort=[("created_at", -1)],
    )
    return [public_message(m) for m in docs]


def list_all_messages(message_type: Optional[str] = None, is_read: Optional[bool] = None,
                      page: int = 1, limit: int = 20) -> dict:
    query = {"is_deleted": False}
    if message_type:
        query["message_type"] = message_type
    if is_read is not None:
        query["is_read"] = is_read
    page, skip, limit = paginate(page, limit)
    docs = get_documents("message", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    total = collection("message").count_documents(query)
    return {
        "messages": [public_message(m) for m in docs],
        "pagination": pagination_meta(page, limit, total),
    }
