"""
One-time codes bound to an email address.

At most one unused code exists per (email, purpose). Verification is bounded by
OTP_MAX_ATTEMPTS mismatches and OTP_EXPIRE_MINUTES; once a code is used it
stays in the collection (marked ``used``) until the TTL index removes it.
"""

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pymongo import ReturnDocument

from config import OTP_EXPIRE_MINUTES, OTP_MAX_ATTEMPTS
from database import collection, create_document, utcnow
from errors import InvalidCode, OtpAlreadyUsed, OtpExpired, OtpNotFound, TooManyAttempts
from schemas import Otp

logger = logging.getLogger(__name__)


def generate_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def issue_code(email: str, purpose: str = "registration", now: Optional[datetime] = None) -> dict:
    email = email.lower()
    now = now or utcnow()
    otps = collection("otp")
    otps.delete_many({"email": email, "purpose": purpose, "used": False})
    record = Otp(
        email=email,
        code=generate_code(),
        purpose=purpose,
        expires_at=now + timedelta(minutes=OTP_EXPIRE_MINUTES),
    ).model_dump()
    record["created_at"] = now
    create_document("otp", record)
    return otps.find_one({"email": email, "purpose": purpose, "used": False})


def _check(record: Optional[dict], now: datetime):
    if record is None:
        raise OtpNotFound()
    if record.get("used"):
        raise OtpAlreadyUsed()
    if now > record["expires_at"]:
        raise OtpExpired()
    if record.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        raise TooManyAttempts()


def verify_code(email: str, code: str, purpose: str = "registration", now: Optional[datetime] = None) -> dict:
    """Consume the latest code for (email, purpose) or raise a CredentialError."""
    email = email.lower()
    now = now or utcnow()
    otps = collection("otp")
    record = otps.find_one({"email": email, "purpose": purpose}, sort=[("created_at", -1)])
    _check(record, now)

    if not hmac.compare_digest(str(record["code"]).encode(), str(code or "").encode()):
        updated = otps.find_one_and_update(
            {"_id": record["_id"], "used": False, "attempts": {"$lt": OTP_MAX_ATTEMPTS}},
            {"$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            _check(otps.find_one({"_id": record["_id"]}), now)
        raise InvalidCode()

    consumed = otps.find_one_and_update(
        {
            "_id": record["_id"],
            "used": False,
            "attempts": {"$lt": OTP_MAX_ATTEMPTS},
            "expires_at": {"$gte": now},
        },
        {"$set": {"used": True, "used_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if consumed is None:
        # lost a race with another verification of the same record
        _check(otps.find_one({"_id": record["_id"]}), now)
        raise OtpAlreadyUsed()
    logger.info("OTP verified for %s (%s)", email, purpose)
    return consumed
