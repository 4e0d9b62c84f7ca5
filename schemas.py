"""
Database Schemas for the SchoolLink communication backend

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Use these to validate data and as the source of truth for the application domain.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, StringConstraints, field_validator

Role = Literal["teacher", "parent", "student"]
MessageType = Literal["text", "image", "file", "voice"]
DiscussionCategory = Literal["general", "homework", "announcement", "question", "event"]
Priority = Literal["high", "medium", "low"]
EventType = Literal["todo", "event"]
NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# Registration profiles: one variant per role, each with only its own fields
class _ProfileBase(BaseModel):
    name: NonEmptyStr
    email: EmailStr
    password: str = Field(..., min_length=6)
    avatar: str = ""

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


class TeacherProfile(_ProfileBase):
    role: Literal["teacher"]
    subjects: List[str] = Field(default_factory=list)


class ParentProfile(_ProfileBase):
    role: Literal["parent"]
    child_name: NonEmptyStr = Field(..., description="Name of the linked child")


class StudentProfile(_ProfileBase):
    role: Literal["student"]
    student_id: NonEmptyStr = Field(..., description="School-issued student number")
    grade: Optional[str] = None


Profile = Annotated[Union[TeacherProfile, ParentProfile, StudentProfile], Field(discriminator="role")]


# Core identity
class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role
    avatar: str = ""
    student_id: Optional[str] = None
    grade: Optional[str] = None
    child_name: Optional[str] = None
    subjects: List[str] = Field(default_factory=list)
    is_active: bool = True
    last_login: Optional[datetime] = None


# Enrollment
class Participant(BaseModel):
    user_id: str
    role: Role
    student_id: Optional[str] = Field(None, description="Linking id, required for students and parents")


class SchoolClass(BaseModel):
    id: str
    name: str
    teacher_id: str
    student_ids: List[str] = Field(default_factory=list)


class Semester(BaseModel):
    name: str
    school_year: str
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    description: str = ""
    participants: List[Participant] = Field(default_factory=list)
    classes: List[SchoolClass] = Field(default_factory=list)
    version: int = 0


# Communications
class Attachment(BaseModel):
    file_name: str
    file_url: str
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)


class Message(BaseModel):
    sender_id: str
    recipient_id: str
    content: str
    message_type: MessageType = "text"
    attachments: List[Attachment] = Field(default_factory=list)
    is_read: bool = False
    read_at: Optional[datetime] = None
    semester_id: str
    is_archived: bool = False


class Reply(BaseModel):
    id: str
    author_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    is_edited: bool = False


class Discussion(BaseModel):
    title: str
    content: str
    author_id: str
    semester_id: str
    category: DiscussionCategory = "general"
    tags: List[str] = Field(default_factory=list)
    is_pinned: bool = False
    is_closed: bool = False
    views: int = 0
    replies: List[Reply] = Field(default_factory=list)
    last_activity: datetime


# Calendar
class CalendarEvent(BaseModel):
    title: str
    description: str = ""
    start: datetime
    end: datetime
    priority: Priority = "medium"
    type: EventType = "todo"
    is_completed: bool = False
    link: str = ""
    link_text: str = ""
    semester_id: str
    created_by: str
