"""
Database Schemas for CivicConnect

Each Pydantic model represents a MongoDB collection.
Collection name = lowercase of class name (User -> "user", Report -> "report").
References to other documents are stored as the hex string of their ObjectId.
"""

import math
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal['citizen', 'admin']
OtpPurpose = Literal['registration', 'password_reset', 'email_verification']
Category = Literal['pothole', 'streetlight', 'trash', 'graffiti', 'other']
Status = Literal['pending', 'acknowledged', 'in_progress', 'resolved', 'closed']
Priority = Literal['low', 'medium', 'high', 'urgent']
Department = Literal['Public Works', 'Sanitation', 'Transportation', 'Parks & Recreation', 'Other']
MessagePriority = Literal['low', 'normal', 'high']
MessageType = Literal['general', 'report_update', 'status_change', 'admin_notification']
Period = Literal['daily', 'weekly', 'monthly', 'yearly']
ContactCategory = Literal['general', 'support', 'feedback', 'bug_report', 'feature_request', 'partnership']
ContactStatus = Literal['new', 'in_progress', 'responded', 'closed']
ContactPriority = Literal['low', 'normal', 'high', 'urgent']

STATUSES = ('pending', 'acknowledged', 'in_progress', 'resolved', 'closed')
RESOLVED_STATUSES = ('resolved', 'closed')
CATEGORIES = ('pothole', 'streetlight', 'trash', 'graffiti', 'other')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
DEPARTMENTS = ('Public Works', 'Sanitation', 'Transportation', 'Parks & Recreation', 'Other')
ROLES = ('citizen', 'admin')
CONTACT_STATUSES = ('new', 'in_progress', 'responded', 'closed')


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Full name")
    email: EmailStr = Field(..., description="Email address (unique, lowercase)")
    password_hash: str = Field(..., description="Hashed password (bcrypt)")
    role: Role = Field('citizen', description="Role of the account")
    is_active: bool = Field(True, description="Whether user is active")
    is_email_verified: bool = Field(False, description="Email ownership proven by OTP")
    reports_count: int = Field(0, ge=0, description="Number of reports authored")
    last_login: Optional[datetime] = Field(None)
    reset_token: Optional[str] = Field(None, description="Outstanding password reset token (single use)")


class Otp(BaseModel):
    email: EmailStr = Field(..., description="Email the code is bound to")
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$", description="6 digit code")
    purpose: OtpPurpose = Field('registration')
    used: bool = Field(False)
    expires_at: datetime = Field(...)
    attempts: int = Field(0, ge=0, le=3, description="Failed verification attempts")


class Location(BaseModel):
    type: Literal['Point'] = 'Point'
    coordinates: List[float] = Field(..., description="[longitude, latitude]")
    address: Optional[str] = Field(None, max_length=300, description="Nearest address or landmark")

    @field_validator('coordinates')
    @classmethod
    def check_coordinates(cls, v: List[float]) -> List[float]:
        if len(v) != 2:
            raise ValueError('Valid location coordinates are required')
        lng, lat = v
        if not all(math.isfinite(c) for c in v):
            raise ValueError('Coordinates must be finite numbers')
        if not -180 <= lng <= 180:
            raise ValueError('Longitude must be between -180 and 180')
        if not -90 <= lat <= 90:
            raise ValueError('Latitude must be between -90 and 90')
        return v


class Comment(BaseModel):
    user_id: str
    content: str = Field(..., min_length=1, max_length=500)
    is_admin: bool = False
    created_at: datetime


class Votes(BaseModel):
    count: int = 0
    voters: List[str] = Field(default_factory=list)


class Report(BaseModel):
    report_id: str = Field(..., description="Human readable id, e.g. RC-0001")
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    category: Category
    status: Status = Field('pending')
    priority: Priority = Field('medium')
    location: Location
    reporter_id: str
    assigned_to: Optional[str] = None
    department: Department = Field('Other')
    votes: Votes = Field(default_factory=Votes)
    comments: List[Comment] = Field(default_factory=list)
    estimated_resolution: Optional[datetime] = None
    actual_resolution: Optional[datetime] = None
    first_resolution: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    is_public: bool = True
    is_anonymous: bool = False

    @field_validator('tags')
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        out = []
        for tag in v:
            tag = tag.strip().lower()
            if tag and tag not in out:
                out.append(tag)
        return out


class Message(BaseModel):
    sender_id: str
    recipient_id: str
    subject: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    related_report: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    priority: MessagePriority = 'normal'
    message_type: MessageType = 'general'
    reply_to: Optional[str] = None


class Analytics(BaseModel):
    date: datetime = Field(..., description="UTC midnight of the summarised day")
    period: Period = 'daily'
    metrics: dict = Field(default_factory=dict)
    generated_at: datetime


class ContactNote(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    added_by: str
    added_at: datetime


class ContactResponse(BaseModel):
    content: str = Field(..., min_length=10, max_length=2000)
    responded_by: str
    responded_at: datetime


class Contact(BaseModel):
    """
    Public contact-form submission, triaged by administrators.
    Collection name: "contact"
    """
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    subject: str = Field(..., min_length=5, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)
    category: ContactCategory = 'general'
    status: ContactStatus = 'new'
    priority: ContactPriority = 'normal'
    assigned_to: Optional[str] = None
    response: Optional[ContactResponse] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    notes: List[ContactNote] = Field(default_factory=list)
