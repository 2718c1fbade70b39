from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import JWT_ALG, JWT_EXPIRE_MINUTES, JWT_SECRET, RESET_TOKEN_EXPIRE_MINUTES
from errors import InvalidResetToken, Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

RESET_TOKEN_TYPE = "password_reset"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    payload = data.copy()
    now = datetime.now(timezone.utc)
    payload.update({
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=JWT_EXPIRE_MINUTES)),
    })
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def token_claims(user: dict) -> dict:
    return {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "citizen"),
        "name": user.get("name"),
    }


def create_access_token(user: dict) -> str:
    return create_token(token_claims(user))


def decode_access_token(token: str) -> dict:
    try:
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise Unauthorized("Invalid or expired token")
    if data.get("type") or not data.get("sub"):
        # reset tokens are signed with the same key but are not sessions
        raise Unauthorized("Invalid token")
    return data


def create_reset_token(user_id: str) -> str:
    return create_token(
        {"sub": user_id, "type": RESET_TOKEN_TYPE},
        expires_delta=timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES),
    )


def decode_reset_token(token: str) -> dict:
    try:
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise InvalidResetToken()
    if data.get("type") != RESET_TOKEN_TYPE:
        raise InvalidResetToken("Invalid reset token")
    return data
