"""
MongoDB access for CivicConnect.

``db`` is None when DATABASE_URL / DATABASE_NAME are not set; every helper then
fails with a DependencyFailure instead of a connection error.
"""

import logging
import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient, ReturnDocument

from errors import DependencyFailure

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC now, truncated to BSON's millisecond precision."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def collection(name: str):
    if db is None:
        raise DependencyFailure("Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  skip: int = 0, sort: Optional[list] = None) -> List[dict]:
    cursor = collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def next_sequence(name: str) -> int:
    counter = collection("counter").find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def paginate(page: int = 1, limit: int = 10, max_limit: int = 100):
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 10), 1), max_limit)
    return page, (page - 1) * limit, limit


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }


def ensure_indexes():
    if db is None:
        logger.warning("Database not configured; skipping index creation")
        return
    db["user"].create_index("email", unique=True)
    db["otp"].create_index([("email", ASCENDING), ("purpose", ASCENDING)])
    db["otp"].create_index("expires_at", expireAfterSeconds=0)
    db["report"].create_index("report_id", unique=True)
    db["report"].create_index([("location", GEOSPHERE)])
    for field in ("status", "category", "priority", "reporter_id"):
        db["report"].create_index(field)
    db["report"].create_index([("created_at", DESCENDING)])
    db["report"].create_index([("votes.count", DESCENDING)])
    db["message"].create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])
    db["message"].create_index([("recipient_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)])
    db["contact"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    for field in ("category", "priority", "assigned_to", "is_read"):
        db["contact"].create_index(field)
    db["analytics"].create_index([("date", ASCENDING), ("period", ASCENDING)], unique=True)
    logger.info("Indexes ensured on database %s", db.name)
