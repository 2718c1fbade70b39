"""
Report lifecycle.

A report document is the aggregate root for its votes and comments: every
mutation below is a single conditional update on that document, so
``votes.count == len(votes.voters)`` holds under concurrent requests and
``actual_resolution`` is set exactly while the status is resolved or closed.

Any status may be set from any other; ``pending`` is the only initial state.
Operations that should notify somebody return a list of notifier.Email effects
instead of sending mail themselves.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument

import notifier
from accounts import get_user, object_id
from database import collection, create_document, get_documents, next_sequence, paginate, pagination_meta, utcnow
from errors import Forbidden, InvalidAssignee, NotFound, ValidationError
from schemas import RESOLVED_STATUSES, STATUSES, Comment, Location, Report

logger = logging.getLogger(__name__)

TRIAGE_FIELDS = {"status", "priority", "assigned_to", "department", "estimated_resolution", "tags"}
OWNER_FIELDS = {"title", "description", "category", "location", "is_public", "is_anonymous"}
SORT_FIELDS = {"created_at", "updated_at", "priority", "status", "votes.count", "report_id"}
MAX_RETRIES = 5


def can_set_field(actor_role: str, field: str, is_owner: bool) -> bool:
    if actor_role == "admin":
        return field in TRIAGE_FIELDS or field in OWNER_FIELDS
    if field in OWNER_FIELDS:
        return is_owner
    return False


def format_report_id(seq: int) -> str:
    return f"RC-{seq:04d}"


def _get(report_id: str) -> dict:
    report = collection("report").find_one({"_id": object_id(report_id, "report id")})
    if not report:
        raise NotFound("Report not found")
    return report


def _is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "admin"


def _is_owner(report: dict, user: Optional[dict]) -> bool:
    return bool(user) and report.get("reporter_id") == str(user["_id"])


# ---------- Serialisation ----------

def _person(user_id: Optional[str], cache: Dict[str, Optional[dict]]) -> Optional[dict]:
    if not user_id:
        return None
    if user_id not in cache:
        cache[user_id] = get_user(user_id)
    user = cache[user_id]
    if not user:
        return {"id": user_id, "name": None, "email": None}
    return {"id": user_id, "name": user.get("name"), "email": user.get("email"), "role": user.get("role")}


def public_report(report: dict, viewer: Optional[dict] = None, detail: bool = False,
                  cache: Optional[Dict[str, Optional[dict]]] = None) -> dict:
    cache = {} if cache is None else cache
    reporter = _person(report.get("reporter_id"), cache)
    if report.get("is_anonymous") and not (_is_admin(viewer) or _is_owner(report, viewer)):
        reporter = {"id": None, "name": "Anonymous", "email": None}
    voters = report.get("votes", {}).get("voters", [])
    out = {
        "id": str(report["_id"]),
        "report_id": report.get("report_id"),
        "title": report.get("title"),
        "description": report.get("description"),
        "category": report.get("category"),
        "status": report.get("status"),
        "priority": report.get("priority"),
        "location": {
            "coordinates": report.get("location", {}).get("coordinates"),
            "address": report.get("location", {}).get("address"),
        },
        "reporter": reporter,
        "assigned_to": _person(report.get("assigned_to"), cache),
        "department": report.get("department"),
        "votes": {
            "count": report.get("votes", {}).get("count", 0),
            "has_voted": bool(viewer) and str(viewer["_id"]) in voters,
        },
        "tags": report.get("tags", []),
        "is_public": report.get("is_public", True),
        "is_anonymous": report.get("is_anonymous", False),
        "estimated_resolution": report.get("estimated_resolution"),
        "actual_resolution": report.get("actual_resolution"),
        "created_at": report.get("created_at"),
        "updated_at": report.get("updated_at"),
    }
    if detail:
        out["comments"] = [public_comment(c, cache) for c in report.get("comments", [])]
    else:
        out["comments"] = len(report.get("comments", []))
    return out


def public_comment(comment: dict, cache: Optional[Dict[str, Optional[dict]]] = None) -> dict:
    return {
        "content": comment.get("content"),
        "is_admin": comment.get("is_admin", False),
        "user": _person(comment.get("user_id"), {} if cache is None else cache),
        "created_at": comment.get("created_at"),
    }


# ---------- Create / read ----------

def create_report(reporter: dict, title: str, description: str, category: str, location: dict,
                  priority: str = "medium", department: str = "Other", tags: Optional[List[str]] = None,
                  is_anonymous: bool = False, is_public: bool = True) -> dict:
    if not isinstance(location, dict) or "coordinates" not in location:
        raise ValidationError("Valid location coordinates are required")
    try:
        Location(**location)
    except SchemaError as e:
        raise ValidationError.from_schema(e)

    try:
        doc = Report(
            report_id=format_report_id(0),
            title=title,
            description=description,
            category=category,
            priority=priority,
            location=location,
            reporter_id=str(reporter["_id"]),
            department=department,
            tags=tags or [],
            is_anonymous=is_anonymous,
            is_public=is_public,
        ).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)

    # only validated reports draw from the sequence
    report_id = format_report_id(next_sequence("report"))
    doc["report_id"] = report_id
    new_id = create_document("report", doc)
    collection("user").update_one({"_id": reporter["_id"]}, {"$inc": {"reports_count": 1}})
    logger.info("Report %s created by %s", report_id, reporter.get("email"))
    return _get(new_id)


def get_report(report_id: str, viewer: Optional[dict] = None) -> dict:
    report = _get(report_id)
    if not report.get("is_public", True) and not (_is_admin(viewer) or _is_owner(report, viewer)):
        raise Forbidden("Not authorized to view this report")
    return report


def _build_query(filters: Optional[Dict[str, Any]] = None, search: Optional[str] = None) -> dict:
    query = {}
    for key, value in (filters or {}).items():
        if value is not None:
            query[key] = value
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
            {"report_id": {"$regex": pattern, "$options": "i"}},
        ]
    return query


def list_reports(filters: Optional[Dict[str, Any]] = None, search: Optional[str] = None,
                 near: Optional[Tuple[float, float]] = None, radius_km: float = 10,
                 page: int = 1, limit: int = 10, sort: str = "created_at", sort_order: str = "desc",
                 viewer: Optional[dict] = None, public_only: bool = True) -> dict:
    query = _build_query(filters, search)
    if public_only:
        query["is_public"] = True
    page, skip, limit = paginate(page, limit)

    if sort not in SORT_FIELDS:
        sort = "created_at"
    order = 1 if sort_order == "asc" else -1

    if near:
        # $near already orders by distance and cannot be counted directly
        geo = {
            "$near": {
                "$geometry": {"type": "Point", "coordinates": [near[0], near[1]]},
                "$maxDistance": radius_km * 1000,
            }
        }
        docs = get_documents("report", {**query, "location": geo}, limit=limit, skip=skip)
        total = collection("report").count_documents({
            **query,
            "location": {"$geoWithin": {"$centerSphere": [[near[0], near[1]], radius_km / 6378.1]}},
        })
    else:
        docs = get_documents("report", query, limit=limit, skip=skip, sort=[(sort, order)])
        total = collection("report").count_documents(query)

    cache: Dict[str, Optional[dict]] = {}
    return {
        "reports": [public_report(d, viewer, cache=cache) for d in docs],
        "pagination": pagination_meta(page, limit, total),
    }


def list_my_reports(user: dict, status: Optional[str] = None, category: Optional[str] = None,
                    page: int = 1, limit: int = 10) -> dict:
    return list_reports(
        filters={"reporter_id": str(user["_id"]), "status": status, "category": category},
        page=page, limit=limit, viewer=user, public_only=False,
    )


# ---------- State machine ----------

def update_status(report_id: str, new_status: str, actor: dict, comment: Optional[str] = None,
                  now: Optional[datetime] = None) -> Tuple[dict, List[notifier.Email]]:
    if not _is_admin(actor):
        raise Forbidden("Only administrators can change report status")
    if new_status not in STATUSES:
        raise ValidationError(f"Invalid status: {new_status}")

    reports = collection("report")
    actor_id = str(actor["_id"])
    for _ in range(MAX_RETRIES):
        report = _get(report_id)
        now = now or utcnow()
        old_status = report.get("status")

        changes = {"status": new_status, "updated_at": now}
        unset = {}
        if new_status in RESOLVED_STATUSES:
            if old_status not in RESOLVED_STATUSES or not report.get("actual_resolution"):
                changes["actual_resolution"] = now
            if not report.get("first_resolution"):
                changes["first_resolution"] = now
        else:
            unset["actual_resolution"] = ""

        comments = [Comment(user_id=actor_id, content=f"Status updated to: {new_status}",
                            is_admin=True, created_at=now).model_dump()]
        if comment:
            comments.append(Comment(user_id=actor_id, content=comment, is_admin=True, created_at=now).model_dump())

        update = {"$set": changes, "$push": {"comments": {"$each": comments}}}
        if unset:
            update["$unset"] = unset
        # compare-and-swap on the status we based the resolution stamp on
        updated = reports.find_one_and_update(
            {"_id": report["_id"], "status": old_status},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            break
    else:
        raise ValidationError("Report was modified concurrently, please retry")

    logger.info("Report %s status %s -> %s by %s", updated.get("report_id"), old_status, new_status, actor.get("email"))

    effects = []
    reporter = get_user(updated["reporter_id"])
    if reporter:
        effects.append(notifier.status_update_email(reporter, updated))
    return updated, effects


def vote(report_id: str, user: dict) -> Dict[str, Any]:
    """Toggle ``user``'s vote. Returns the resulting count and whether they now vote."""
    oid = object_id(report_id, "report id")
    user_id = str(user["_id"])
    reports = collection("report")

    for _ in range(MAX_RETRIES):
        added = reports.find_one_and_update(
            {"_id": oid, "votes.voters": {"$nin": [user_id]}},
            {"$addToSet": {"votes.voters": user_id}, "$inc": {"votes.count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if added is not None:
            return {"count": added["votes"]["count"], "has_voted": True}

        removed = reports.find_one_and_update(
            {"_id": oid, "votes.voters": user_id},
            {"$pull": {"votes.voters": user_id}, "$inc": {"votes.count": -1}},
            return_document=ReturnDocument.AFTER,
        )
        if removed is not None:
            return {"count": removed["votes"]["count"], "has_voted": False}

        if reports.find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFound("Report not found")
    raise ValidationError("Vote could not be recorded, please retry")


def add_comment(report_id: str, user: dict, content: str) -> dict:
    content = (content or "").strip()
    try:
        comment = Comment(
            user_id=str(user["_id"]),
            content=content,
            is_admin=user.get("role") == "admin",
            created_at=utcnow(),
        ).model_dump()
    except SchemaError as e:
        raise ValidationError.from_schema(e)

    result = collection("report").update_one(
        {"_id": object_id(report_id, "report id")},
        {"$push": {"comments": comment}, "$set": {"updated_at": comment["created_at"]}},
    )
    if result.matched_count == 0:
        raise NotFound("Report not found")
    return comment


def assign(report_id: str, assignee_id: str, actor: dict) -> dict:
    if not _is_admin(actor):
        raise Forbidden("Only administrators can assign reports")
    report = _get(report_id)
    assignee = get_user(assignee_id)
    if not assignee or assignee.get("role") != "admin":
        raise InvalidAssignee()
    return collection("report").find_one_and_update(
        {"_id": report["_id"]},
        {"$set": {"assigned_to": str(assignee["_id"]), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def update_report(report_id: str, actor: dict, changes: Dict[str, Any]) -> Tuple[dict, List[notifier.Email]]:
    report = _get(report_id)
    is_owner = _is_owner(report, actor)
    if not is_owner and not _is_admin(actor):
        raise Forbidden("Not authorized to update this report")

    changes = {k: v for k, v in changes.items() if v is not None}
    role = actor.get("role", "citizen")
    for field in changes:
        if not can_set_field(role, field, is_owner):
            raise Forbidden(f"Not authorized to change {field}")

    effects: List[notifier.Email] = []
    status = changes.pop("status", None)
    assignee = changes.pop("assigned_to", None)

    if changes:
        merged = {k: v for k, v in report.items() if k in Report.model_fields}
        merged.update(changes)
        try:
            validated = Report(**merged).model_dump()
        except SchemaError as e:
            raise ValidationError.from_schema(e)
        fields = {k: validated[k] for k in changes}
        fields["updated_at"] = utcnow()
        collection("report").update_one({"_id": report["_id"]}, {"$set": fields})

    if assignee:
        assign(report_id, assignee, actor)
    if status and status != report.get("status"):
        _, effects = update_status(report_id, status, actor)

    return _get(report_id), effects


def delete_report(report_id: str, actor: dict):
    report = _get(report_id)
    if not _is_owner(report, actor) and not _is_admin(actor):
        raise Forbidden("Not authorized to delete this report")
    result = collection("report").delete_one({"_id": report["_id"]})
    if result.deleted_count:
        collection("user").update_one(
            {"_id": object_id(report["reporter_id"]), "reports_count": {"$gt": 0}},
            {"$inc": {"reports_count": -1}},
        )
        logger.info("Report %s deleted by %s", report.get("report_id"), actor.get("email"))
