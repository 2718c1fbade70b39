import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from pydantic import ValidationError as SchemaError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

import accounts
import analytics
import contacts
import database
import messages
import notifier
import reports
from config import APP_NAME, AUTH_RATE_LIMIT, CONTACT_RATE_LIMIT, CORS_ORIGINS, LOG_LEVEL, REPORT_RATE_LIMIT
from errors import AccountDeactivated, AppError, Forbidden, RateLimited, Unauthorized, ValidationError
from schemas import (Category, ContactCategory, ContactPriority, ContactStatus, Department, Location, MessagePriority,
                     MessageType, Priority, Role, Status)
from security import decode_access_token

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)
bearer = HTTPBearer(auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except Exception:
        logger.exception("Could not create indexes")
    yield


app = FastAPI(title=APP_NAME, lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    body = {"detail": exc.message}
    headers = None
    if isinstance(exc, RateLimited):
        body["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    limit = getattr(getattr(exc, "limit", None), "limit", None)
    retry_after = limit.get_expiry() if limit is not None else 60
    return await app_error_handler(request, RateLimited(retry_after=retry_after))


# ---------- Auth Helpers ----------

def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Not authenticated")
    claims = decode_access_token(credentials.credentials)
    user = accounts.get_user(claims["sub"])
    if not user:
        raise Unauthorized("User not found")
    if not user.get("is_active", True):
        raise AccountDeactivated()
    return user


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[dict]:
    if credentials is None:
        return None
    try:
        return get_current_user(credentials)
    except AppError:
        return None


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise Forbidden("Admin access required")
    return user


def parse_near(near: Optional[str]):
    if not near:
        return None
    try:
        lng, lat = (float(p) for p in near.split(","))
    except ValueError:
        raise ValidationError("near must be 'longitude,latitude'")
    try:
        Location(coordinates=[lng, lat])
    except SchemaError as e:
        raise ValidationError.from_schema(e)
    return lng, lat


# ---------- Models for requests ----------

class SendOtpRequest(BaseModel):
    email: EmailStr


class VerifyOtpRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    otp: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[EmailStr] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=6, max_length=128)


class ReportCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    category: Category
    location: Location
    priority: Priority = "medium"
    department: Department = "Other"
    tags: List[str] = Field(default_factory=list)
    is_anonymous: bool = False
    is_public: bool = True


class ReportUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    category: Optional[Category] = None
    location: Optional[Location] = None
    is_public: Optional[bool] = None
    is_anonymous: Optional[bool] = None
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[str] = None
    department: Optional[Department] = None
    estimated_resolution: Optional[datetime] = None
    tags: Optional[List[str]] = None


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=500)


class ReportStatusUpdate(BaseModel):
    status: Status
    comment: Optional[str] = Field(None, max_length=500)


class ReportAssign(BaseModel):
    assigned_to: str


class UserStatusUpdate(BaseModel):
    is_active: bool


class AnalyticsGenerate(BaseModel):
    date: Optional[datetime] = None


class MessageCreate(BaseModel):
    recipient: str
    subject: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    related_report: Optional[str] = None
    priority: MessagePriority = "normal"
    message_type: MessageType = "general"


class AdminMessageCreate(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    related_report: Optional[str] = None
    priority: MessagePriority = "normal"


class MessageReply(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class ContactCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    subject: str = Field(..., min_length=5, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)
    category: ContactCategory = "general"


class ContactStatusUpdate(BaseModel):
    status: ContactStatus


class ContactAssign(BaseModel):
    assigned_to: str


class ContactRespond(BaseModel):
    content: str = Field(..., min_length=10, max_length=2000)


class ContactNoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/test")
def test_database():
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        if database.db is not None:
            info["database"] = "connected"
            info["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# ---------- Auth endpoints ----------

@app.post("/auth/send-otp")
@limiter.limit(AUTH_RATE_LIMIT)
def send_otp(request: Request, req: SendOtpRequest):
    record = accounts.send_registration_code(req.email)
    expires_in = int((record["expires_at"] - record["created_at"]).total_seconds())
    return {"message": "OTP sent successfully to your email", "email": record["email"], "expires_in": expires_in}


@app.post("/auth/verify-otp", status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)
def verify_otp(request: Request, req: VerifyOtpRequest, background_tasks: BackgroundTasks):
    user, token, effects = accounts.register_with_code(req.name, req.email, req.password, req.otp)
    background_tasks.add_task(notifier.dispatch, effects)
    return {"token": token, "user": accounts.public_user(user)}


@app.post("/auth/login")
@limiter.limit(AUTH_RATE_LIMIT)
def login(request: Request, req: LoginRequest):
    user, token = accounts.login(req.email, req.password)
    return {"token": token, "user": accounts.public_user(user)}


@app.get("/me")
@app.get("/auth/me")
def me(user: dict = Depends(get_current_user)):
    return accounts.public_user(user)


@app.put("/auth/profile")
def update_profile(req: ProfileUpdate, user: dict = Depends(get_current_user)):
    updated = accounts.update_profile(user, name=req.name, email=req.email)
    return {"user": accounts.public_user(updated)}


@app.put("/auth/change-password")
def change_password(req: ChangePasswordRequest, user: dict = Depends(get_current_user)):
    accounts.change_password(user, req.current_password, req.new_password)
    return {"ok": True}


@app.post("/auth/forgot-password")
@limiter.limit(AUTH_RATE_LIMIT)
def forgot_password(request: Request, req: ForgotPasswordRequest, background_tasks: BackgroundTasks):
    effects = accounts.request_password_reset(req.email)
    background_tasks.add_task(notifier.dispatch, effects)
    # same answer whether or not the account exists
    return {"ok": True, "message": "If that email is registered, a reset link has been sent"}


@app.put("/auth/reset-password")
@limiter.limit(AUTH_RATE_LIMIT)
def reset_password(request: Request, req: ResetPasswordRequest):
    accounts.reset_password(req.token, req.password)
    return {"ok": True}


@app.post("/auth/logout")
def logout(user: dict = Depends(get_current_user)):
    # Sessions are stateless; the client discards its token.
    return {"ok": True}


@app.delete("/auth/account")
def delete_account(user: dict = Depends(get_current_user)):
    accounts.deactivate(user)
    return {"ok": True}


# ---------- Report endpoints ----------

@app.get("/reports")
def list_reports(
    page: int = 1,
    limit: int = 10,
    sort: str = "created_at",
    sort_order: str = "desc",
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    priority: Optional[Priority] = None,
    department: Optional[Department] = None,
    search: Optional[str] = Query(None, max_length=100),
    near: Optional[str] = Query(None, description="longitude,latitude"),
    radius: float = Query(10, gt=0, le=100, description="Search radius in km"),
    user: Optional[dict] = Depends(get_optional_user),
):
    filters = {"category": category, "status": status, "priority": priority, "department": department}
    return reports.list_reports(
        filters=filters, search=search, near=parse_near(near), radius_km=radius,
        page=page, limit=limit, sort=sort, sort_order=sort_order, viewer=user,
    )


@app.get("/reports/mine")
def my_reports(page: int = 1, limit: int = 10, status: Optional[Status] = None,
               category: Optional[Category] = None, user: dict = Depends(get_current_user)):
    return reports.list_my_reports(user, status=status, category=category, page=page, limit=limit)


@app.get("/reports/{report_id}")
def get_report(report_id: str, user: Optional[dict] = Depends(get_optional_user)):
    report = reports.get_report(report_id, viewer=user)
    return {"report": reports.public_report(report, viewer=user, detail=True)}


@app.post("/reports", status_code=201)
@limiter.limit(REPORT_RATE_LIMIT)
def create_report(request: Request, req: ReportCreate, user: dict = Depends(get_current_user)):
    report = reports.create_report(
        user,
        title=req.title,
        description=req.description,
        category=req.category,
        location=req.location.model_dump(),
        priority=req.priority,
        department=req.department,
        tags=req.tags,
        is_anonymous=req.is_anonymous,
        is_public=req.is_public,
    )
    return {"report": reports.public_report(report, viewer=user)}


@app.put("/reports/{report_id}")
def update_report(report_id: str, req: ReportUpdate, background_tasks: BackgroundTasks,
                  user: dict = Depends(get_current_user)):
    changes = req.model_dump(exclude_unset=True)
    report, effects = reports.update_report(report_id, user, changes)
    background_tasks.add_task(notifier.dispatch, effects)
    return {"report": reports.public_report(report, viewer=user)}


@app.delete("/reports/{report_id}")
def delete_report(report_id: str, user: dict = Depends(get_current_user)):
    reports.delete_report(report_id, user)
    return {"ok": True}


@app.post("/reports/{report_id}/vote")
def vote_report(report_id: str, user: dict = Depends(get_current_user)):
    votes = reports.vote(report_id, user)
    return {"message": "Vote added" if votes["has_voted"] else "Vote removed", "votes": votes}


@app.post("/reports/{report_id}/comments", status_code=201)
def add_comment(report_id: str, req: CommentCreate, user: dict = Depends(get_current_user)):
    comment = reports.add_comment(report_id, user, req.content)
    return {"comment": reports.public_comment(comment)}


# ---------- Admin endpoints ----------

@app.get("/admin/dashboard")
def admin_dashboard(_: dict = Depends(require_admin)):
    return analytics.dashboard_stats()


@app.get("/admin/reports")
def admin_reports(
    page: int = 1,
    limit: int = 20,
    sort: str = "created_at",
    sort_order: str = "desc",
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    priority: Optional[Priority] = None,
    department: Optional[Department] = None,
    assigned_to: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    admin: dict = Depends(require_admin),
):
    filters = {"category": category, "status": status, "priority": priority,
               "department": department, "assigned_to": assigned_to}
    return reports.list_reports(
        filters=filters, search=search, page=page, limit=limit,
        sort=sort, sort_order=sort_order, viewer=admin, public_only=False,
    )


@app.put("/admin/reports/{report_id}/status")
def admin_update_status(report_id: str, req: ReportStatusUpdate, background_tasks: BackgroundTasks,
                        admin: dict = Depends(require_admin)):
    report, effects = reports.update_status(report_id, req.status, admin, comment=req.comment)
    background_tasks.add_task(notifier.dispatch, effects)
    return {"report": reports.public_report(report, viewer=admin, detail=True)}


@app.put("/admin/reports/{report_id}/assign")
def admin_assign(report_id: str, req: ReportAssign, admin: dict = Depends(require_admin)):
    report = reports.assign(report_id, req.assigned_to, admin)
    return {"report": reports.public_report(report, viewer=admin)}


@app.get("/admin/users")
def admin_users(page: int = 1, limit: int = 20, role: Optional[Role] = None,
                is_active: Optional[bool] = None, search: Optional[str] = Query(None, max_length=100),
                _: dict = Depends(require_admin)):
    return accounts.list_users(role=role, is_active=is_active, search=search, page=page, limit=limit)


@app.put("/admin/users/{user_id}/status")
def admin_user_status(user_id: str, req: UserStatusUpdate, admin: dict = Depends(require_admin)):
    user = accounts.set_user_active(admin, user_id, req.is_active)
    return {"user": accounts.public_user(user)}


@app.get("/admin/analytics")
def admin_analytics(period: str = "daily", start_date: Optional[datetime] = None,
                    end_date: Optional[datetime] = None, _: dict = Depends(require_admin)):
    if start_date and end_date:
        docs = analytics.get_analytics(start_date, end_date, period)
    else:
        docs = analytics.latest_analytics(period, 30)
    return {"analytics": [analytics.public_snapshot(d) for d in docs]}


@app.post("/admin/analytics/generate")
def admin_generate_analytics(req: AnalyticsGenerate, _: dict = Depends(require_admin)):
    snapshot = analytics.calculate_daily_analytics(req.date)
    return {"analytics": analytics.public_snapshot(snapshot)}


@app.get("/admin/messages")
def admin_messages(page: int = 1, limit: int = 20, message_type: Optional[MessageType] = None,
                   is_read: Optional[bool] = None, _: dict = Depends(require_admin)):
    return messages.list_all_messages(message_type=message_type, is_read=is_read, page=page, limit=limit)


@app.get("/admin/contacts")
def admin_contacts(page: int = 1, limit: int = 20, status: Optional[ContactStatus] = None,
                   category: Optional[ContactCategory] = None, priority: Optional[ContactPriority] = None,
                   is_read: Optional[bool] = None, _: dict = Depends(require_admin)):
    return contacts.list_contacts(status=status, category=category, priority=priority,
                                  is_read=is_read, page=page, limit=limit)


@app.post("/admin/contacts/{contact_id}/respond")
def admin_respond_contact(contact_id: str, req: ContactRespond, background_tasks: BackgroundTasks,
                          admin: dict = Depends(require_admin)):
    contact, effects = contacts.respond(contact_id, req.content, admin)
    background_tasks.add_task(notifier.dispatch, effects)
    return {"contact": contacts.public_contact(contact)}


# ---------- Message endpoints ----------

@app.get("/messages")
def list_messages(page: int = 1, limit: int = 20, is_read: Optional[bool] = None,
                  message_type: Optional[MessageType] = None, priority: Optional[MessagePriority] = None,
                  user: dict = Depends(get_current_user)):
    return messages.list_messages(user, is_read=is_read, message_type=message_type,
                                  priority=priority, page=page, limit=limit)


@app.get("/messages/unread-count")
def unread_count(user: dict = Depends(get_current_user)):
    return {"unread_count": messages.unread_count(user)}


@app.post("/messages/admin", status_code=201)
def message_admin(req: AdminMessageCreate, user: dict = Depends(get_current_user)):
    message = messages.send_to_admin(user, req.subject, req.content, req.related_report, req.priority)
    return {"message": messages.public_message(message)}


@app.get("/messages/conversation/{user_id}")
def conversation(user_id: str, limit: int = 50, user: dict = Depends(get_current_user)):
    return {"messages": messages.conversation(user, user_id, limit)}


@app.get("/messages/{message_id}")
def get_message(message_id: str, user: dict = Depends(get_current_user)):
    return {"message": messages.public_message(messages.get_message(message_id, user))}


@app.post("/messages", status_code=201)
def send_message(req: MessageCreate, user: dict = Depends(get_current_user)):
    message = messages.send_message(user, req.recipient, req.subject, req.content,
                                    req.related_report, req.priority, req.message_type)
    return {"message": messages.public_message(message)}


@app.post("/messages/{message_id}/reply", status_code=201)
def reply_message(message_id: str, req: MessageReply, user: dict = Depends(get_current_user)):
    return {"message": messages.public_message(messages.reply(message_id, user, req.content))}


@app.put("/messages/{message_id}/read")
def read_message(message_id: str, user: dict = Depends(get_current_user)):
    return {"message": messages.public_message(messages.mark_read(message_id, user))}


@app.put("/messages/{message_id}/archive")
def archive_message(message_id: str, user: dict = Depends(get_current_user)):
    return {"message": messages.public_message(messages.archive(message_id, user))}


@app.delete("/messages/{message_id}")
def delete_message(message_id: str, user: dict = Depends(get_current_user)):
    messages.delete(message_id, user)
    return {"ok": True}


# ---------- Contact endpoints ----------

@app.post("/contact", status_code=201)
@limiter.limit(CONTACT_RATE_LIMIT)
def submit_contact(request: Request, req: ContactCreate, background_tasks: BackgroundTasks):
    contact, effects = contacts.submit_contact(
        req.name, req.email, req.subject, req.message, req.category,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    background_tasks.add_task(notifier.dispatch, effects)
    return {
        "message": "Thank you for contacting us. We will get back to you soon.",
        "contact": contacts.public_contact(contact),
    }


@app.get("/contact/stats")
def contact_stats(_: dict = Depends(require_admin)):
    return {"stats": contacts.contact_stats()}


@app.get("/contact/admin")
def list_contacts(page: int = 1, limit: int = 20, status: Optional[ContactStatus] = None,
                  category: Optional[ContactCategory] = None, priority: Optional[ContactPriority] = None,
                  is_read: Optional[bool] = None, _: dict = Depends(require_admin)):
    return contacts.list_contacts(status=status, category=category, priority=priority,
                                  is_read=is_read, page=page, limit=limit)


@app.get("/contact/{contact_id}")
def get_contact(contact_id: str, _: dict = Depends(require_admin)):
    return {"contact": contacts.public_contact(contacts.get_contact(contact_id))}


@app.put("/contact/{contact_id}/status")
def update_contact_status(contact_id: str, req: ContactStatusUpdate, admin: dict = Depends(require_admin)):
    return {"contact": contacts.public_contact(contacts.update_status(contact_id, req.status, admin))}


@app.put("/contact/{contact_id}/assign")
def assign_contact(contact_id: str, req: ContactAssign, admin: dict = Depends(require_admin)):
    return {"contact": contacts.public_contact(contacts.assign(contact_id, req.assigned_to, admin))}


@app.post("/contact/{contact_id}/respond")
def respond_contact(contact_id: str, req: ContactRespond, background_tasks: BackgroundTasks,
                    admin: dict = Depends(require_admin)):
    contact, effects = contacts.respond(contact_id, req.content, admin)
    background_tasks.add_task(notifier.dispatch, effects)
    return {"contact": contacts.public_contact(contact)}


@app.post("/contact/{contact_id}/notes", status_code=201)
def add_contact_note(contact_id: str, req: ContactNoteCreate, admin: dict = Depends(require_admin)):
    return {"contact": contacts.public_contact(contacts.add_note(contact_id, req.content, admin))}


@app.delete("/contact/{contact_id}")
def delete_contact(contact_id: str, _: dict = Depends(require_admin)):
    contacts.delete_contact(contact_id)
    return {"ok": True}
