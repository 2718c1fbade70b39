"""
Account lifecycle: OTP-gated registration, login, password change/reset,
profile updates and the admin user console.
"""

import logging
import re
from typing import List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

import notifier
import otp
from database import collection, create_document, get_documents, paginate, pagination_meta, utcnow
from errors import (AccountDeactivated, AlreadyRegistered, Conflict, DispatchFailure, InvalidCredentials,
                    InvalidResetToken, NotFound, ValidationError)
from schemas import User
from security import create_access_token, create_reset_token, decode_reset_token, hash_password, verify_password

logger = logging.getLogger(__name__)


def public_user(user_doc: dict) -> dict:
    if not user_doc:
        return {}
    return {
        "id": str(user_doc.get("_id")),
        "name": user_doc.get("name"),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "citizen"),
        "is_active": user_doc.get("is_active", True),
        "is_email_verified": user_doc.get("is_email_verified", False),
        "reports_count": user_doc.get("reports_count", 0),
        "last_login": user_doc.get("last_login"),
        "created_at": user_doc.get("created_at"),
    }


def object_id(value: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {what}")


def get_user_by_email(email: str) -> Optional[dict]:
    return collection("user").find_one({"email": email.lower()})


def get_user(user_id: str) -> Optional[dict]:
    return collection("user").find_one({"_id": object_id(user_id, "user id")})


# ---------- Registration ----------

def send_registration_code(email: str) -> dict:
    email = email.lower()
    if get_user_by_email(email):
        raise AlreadyRegistered()
    record = otp.issue_code(email, "registration")
    email_msg = notifier.otp_email(email, record["code"], "registration")
    try:
        notifier.send_email(email_msg.to, email_msg.subject, email_msg.text, email_msg.html)
    except Exception:
        logger.exception("Failed to send OTP email to %s", email)
        raise DispatchFailure("Failed to send OTP email")
    return record


def register_with_code(name: str, email: str, password: str, code: str) -> Tuple[dict, str, List[notifier.Email]]:
    email = email.lower()
    otp.verify_code(email, code, "registration")

    if get_user_by_email(email):
        raise AlreadyRegistered()

    user_doc = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role="citizen",
        is_email_verified=True,
    ).model_dump()
    try:
        user_id = create_document("user", user_doc)
    except DuplicateKeyError:
        raise AlreadyRegistered()
    user = get_user(user_id)
    logger.info("Registered new account %s", email)
    return user, create_access_token(user), [notifier.welcome_email(user)]


# ---------- Sessions ----------

def login(email: str, password: str) -> Tuple[dict, str]:
    user = get_user_by_email(email)
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise InvalidCredentials()
    if not user.get("is_active", True):
        raise AccountDeactivated()

    now = utcnow()
    collection("user").update_one({"_id": user["_id"]}, {"$set": {"last_login": now, "updated_at": now}})
    user["last_login"] = now
    return user, create_access_token(user)


# ---------- Profile & passwords ----------

def update_profile(user: dict, name: Optional[str] = None, email: Optional[str] = None) -> dict:
    changes = {}
    if name:
        changes["name"] = name.strip()
    if email:
        email = email.lower()
        taken = collection("user").find_one({"email": email, "_id": {"$ne": user["_id"]}})
        if taken:
            raise Conflict("Email is already taken")
        changes["email"] = email
    if changes:
        changes["updated_at"] = utcnow()
        collection("user").update_one({"_id": user["_id"]}, {"$set": changes})
    return get_user(str(user["_id"]))


def change_password(user: dict, current_password: str, new_password: str):
    if not verify_password(current_password, user.get("password_hash", "")):
        raise ValidationError("Current password is incorrect")
    collection("user").update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": utcnow()}},
    )


def request_password_reset(email: str) -> List[notifier.Email]:
    user = get_user_by_email(email)
    if not user:
        return []  # avoid user enumeration
    reset_token = create_reset_token(str(user["_id"]))
    collection("user").update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_token": reset_token, "updated_at": utcnow()}},
    )
    return [notifier.password_reset_email(user, reset_token)]


def reset_password(token: str, new_password: str):
    data = decode_reset_token(token)
    # Clearing reset_token in the same update makes the token single use.
    result = collection("user").update_one(
        {"_id": object_id(data.get("sub"), "reset token"), "reset_token": token},
        {"$set": {"password_hash": hash_password(new_password), "reset_token": None, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise InvalidResetToken("Invalid reset token")


def deactivate(user: dict):
    collection("user").update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})


# ---------- Admin console ----------

def list_users(role: Optional[str] = None, is_active: Optional[bool] = None, search: Optional[str] = None,
               page: int = 1, limit: int = 20) -> dict:
    query = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    page, skip, limit = paginate(page, limit)
    docs = get_documents("user", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    total = collection("user").count_documents(query)
    return {
        "users": [public_user(u) for u in docs],
        "pagination": pagination_meta(page, limit, total),
    }


def set_user_active(admin: dict, user_id: str, is_active: bool) -> dict:
    user = get_user(user_id)
    if not user:
        raise NotFound("User not found")
    if user["_id"] == admin["_id"]:
        raise ValidationError("Cannot change the status of your own account")
    collection("user").update_one({"_id": user["_id"]}, {"$set": {"is_active": is_active, "updated_at": utcnow()}})
    user["is_active"] = is_active
    return user
