"""
Database Schemas for the University Communication Portal

Each Pydantic model corresponds to a MongoDB collection. Documents are
stored with snake_case fields and a string `_id`, exposed here as `id`.

Collections used:
- users          (profile mirrored from the identity provider, same id)
- classes        (with embedded subgroups)
- meetings
- chats
- messages
- notifications
- accounts       (identity provider: email + password hash)
- sessions       (identity provider: bearer tokens)
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["student", "professor"]
MeetingStatus = Literal["pending", "accepted", "rejected"]
ChatType = Literal["direct", "group", "ai"]
NotificationType = Literal["meeting", "chat", "class", "system"]

# Sentinel sender id of the automated assistant
AI_ASSISTANT_ID = "AI_ASSISTANT"


class User(BaseModel):
    id: str
    email: EmailStr
    display_name: str
    photo_url: Optional[str] = None
    role: str = Field("student", description="student | professor")
    created_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    # students
    major: Optional[str] = None
    year: Optional[int] = None
    enrolled_classes: List[str] = []
    # professors
    department: Optional[str] = None
    office_hours: Optional[str] = None
    teaching_classes: List[str] = []


class UserInfo(BaseModel):
    """Display metadata for a chat participant or roster entry."""
    id: str
    display_name: str
    email: str = ""
    role: str = "student"
    photo_url: Optional[str] = None


class Subgroup(BaseModel):
    id: str
    name: str
    class_id: str
    members: List[str] = []
    due_date: Optional[str] = None
    last_message: Optional[str] = None
    color: str = "bg-blue-500"


class Class(BaseModel):
    id: str
    name: str
    instructor_id: str
    schedule: str
    description: Optional[str] = None
    enrolled_students: List[str] = []
    subgroups: List[Subgroup] = []


class Meeting(BaseModel):
    id: str
    student_id: str
    professor_id: str
    class_id: Optional[str] = None
    date: str = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description="HH:MM")
    reason: str
    status: MeetingStatus = "pending"
    response_message: Optional[str] = None
    created_at: datetime


class LastMessage(BaseModel):
    sender_id: str
    text: str
    timestamp: datetime


class Chat(BaseModel):
    id: str
    participants: List[str]
    type: ChatType = "direct"
    group_name: Optional[str] = None
    class_id: Optional[str] = None
    last_message: Optional[LastMessage] = None
    created_at: Optional[datetime] = None


class Message(BaseModel):
    id: str
    chat_id: str
    sender_id: str
    text: str
    timestamp: datetime
    read: bool = False


class Notification(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    read: bool = False
    type: NotificationType = "system"
    related_id: Optional[str] = None
    timestamp: datetime


class Account(BaseModel):
    id: str
    email: EmailStr
    password_hash: str


class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime
    created_at: Optional[datetime] = None
