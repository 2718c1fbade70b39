"""
Analytics snapshots and live dashboard figures.

calculate_daily_analytics is idempotent: the snapshot for a (day, period) pair
is recomputed from live report/user/message data and replaced in place.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import contacts
from database import collection, utcnow
from schemas import CATEGORIES, DEPARTMENTS, PRIORITIES, ROLES, STATUSES, Analytics

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(days=30)


def day_bounds(date: datetime):
    """UTC [start, end) of the calendar day containing ``date``."""
    if date.tzinfo is not None:
        date = date.astimezone(timezone.utc).replace(tzinfo=None)
    start = datetime(date.year, date.month, date.day)
    return start, start + timedelta(days=1)


def _group_count(name: str, field: str) -> Dict[str, int]:
    pipeline = [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
    return {row["_id"]: row["count"] for row in collection(name).aggregate(pipeline)}


def _breakdown(counts: Dict[str, int], keys) -> Dict[str, int]:
    return {k: counts.get(k, 0) for k in keys}


def _total_votes() -> int:
    rows = list(collection("report").aggregate([
        {"$group": {"_id": None, "total": {"$sum": "$votes.count"}}},
    ]))
    return rows[0]["total"] if rows else 0


def _total_comments() -> int:
    rows = list(collection("report").aggregate([
        {"$unwind": "$comments"},
        {"$count": "total"},
    ]))
    return rows[0]["total"] if rows else 0


def average_resolution_hours() -> float:
    total = 0.0
    count = 0
    cursor = collection("report").find(
        {"status": "resolved", "actual_resolution": {"$ne": None}},
        {"created_at": 1, "actual_resolution": 1},
    )
    for report in cursor:
        if report.get("actual_resolution") and report.get("created_at"):
            total += (report["actual_resolution"] - report["created_at"]).total_seconds() / 3600
            count += 1
    return total / count if count else 0.0


def compute_metrics(date: datetime, now: Optional[datetime] = None) -> dict:
    start, end = day_bounds(date)
    now = now or utcnow()
    reports = collection("report")
    users = collection("user")

    by_status = _group_count("report", "status")
    total_reports = reports.count_documents({})
    by_role = _group_count("user", "role")
    avg_hours = round(average_resolution_hours(), 2)
    resolved = by_status.get("resolved", 0)

    return {
        "reports": {
            "total": total_reports,
            "new": reports.count_documents({"created_at": {"$gte": start, "$lt": end}}),
            "by_status": _breakdown(by_status, STATUSES),
            "by_category": _breakdown(_group_count("report", "category"), CATEGORIES),
            "by_priority": _breakdown(_group_count("report", "priority"), PRIORITIES),
            "by_department": _breakdown(_group_count("report", "department"), DEPARTMENTS),
        },
        "users": {
            "total": users.count_documents({}),
            "active": users.count_documents({"last_login": {"$gte": now - ACTIVE_WINDOW}}),
            "new": users.count_documents({"created_at": {"$gte": start, "$lt": end}}),
            "by_role": _breakdown(by_role, ROLES),
        },
        "engagement": {
            "total_votes": _total_votes(),
            "total_comments": _total_comments(),
            "total_messages": collection("message").count_documents({"created_at": {"$gte": start, "$lt": end}}),
            "average_resolution_time": avg_hours,
        },
        "performance": {
            "response_time": {
                "average": avg_hours,
                "median": avg_hours,
                # placeholder until per-report resolution times are kept
                "p95": round(avg_hours * 1.5, 2),
            },
            "resolution_rate": round(resolved / total_reports * 100) if total_reports else 0,
        },
    }


def calculate_daily_analytics(date: Optional[datetime] = None, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    start, _ = day_bounds(date or now)
    snapshot = Analytics(
        date=start,
        period="daily",
        metrics=compute_metrics(start, now),
        generated_at=now,
    ).model_dump()

    coll = collection("analytics")
    existing = coll.find_one({"date": start, "period": "daily"}, {"created_at": 1})
    snapshot["created_at"] = existing["created_at"] if existing and existing.get("created_at") else now
    snapshot["updated_at"] = now
    coll.replace_one({"date": start, "period": "daily"}, snapshot, upsert=True)
    logger.info("Daily analytics generated for %s", start.date().isoformat())
    return coll.find_one({"date": start, "period": "daily"})


def get_analytics(start: datetime, end: datetime, period: str = "daily") -> list:
    return list(collection("analytics").find(
        {"date": {"$gte": start, "$lte": end}, "period": period},
    ).sort("date", 1))


def latest_analytics(period: str = "daily", limit: int = 30) -> list:
    return list(collection("analytics").find({"period": period}).sort("date", -1).limit(limit))


def public_snapshot(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "date": doc.get("date"),
        "period": doc.get("period"),
        "metrics": doc.get("metrics", {}),
        "generated_at": doc.get("generated_at"),
    }


def dashboard_stats(now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    start_of_day, _ = day_bounds(now)
    start_of_week = start_of_day - timedelta(days=start_of_day.weekday())
    start_of_month = start_of_day.replace(day=1)

    reports = collection("report")
    users = collection("user")
    messages = collection("message")

    by_status = _group_count("report", "status")
    total = reports.count_documents({})
    resolved = by_status.get("resolved", 0)

    def recent(sort_field):
        return [
            {"id": str(r["_id"]), "report_id": r.get("report_id"), "title": r.get("title"),
             "status": r.get("status"), "votes": r.get("votes", {}).get("count", 0),
             "created_at": r.get("created_at")}
            for r in reports.find({}, {"comments": 0}).sort(sort_field, -1).limit(5)
        ]

    return {
        "reports": {
            "total": total,
            **_breakdown(by_status, STATUSES),
            "today": reports.count_documents({"created_at": {"$gte": start_of_day}}),
            "this_week": reports.count_documents({"created_at": {"$gte": start_of_week}}),
            "this_month": reports.count_documents({"created_at": {"$gte": start_of_month}}),
            "resolution_rate": round(resolved / total * 100) if total else 0,
            "average_resolution_time": round(average_resolution_hours()),
        },
        "users": {
            "total": users.count_documents({}),
            "active": users.count_documents({"last_login": {"$gte": now - ACTIVE_WINDOW}}),
            "new_today": users.count_documents({"created_at": {"$gte": start_of_day}}),
        },
        "messages": {
            "total": messages.count_documents({"is_deleted": False}),
            "unread": messages.count_documents({"is_read": False, "is_deleted": False}),
        },
        "contacts": {
            "total": collection("contact").count_documents({}),
            "unread": contacts.unread_count(),
        },
        "breakdowns": {
            "categories": _breakdown(_group_count("report", "category"), CATEGORIES),
            "priorities": _breakdown(_group_count("report", "priority"), PRIORITIES),
            "departments": _breakdown(_group_count("report", "department"), DEPARTMENTS),
        },
        "recent_reports": recent("created_at"),
        "top_voted_reports": recent("votes.count"),
    }
