"""
Database Schemas for the Campus Content Hub

Each Pydantic model maps to a MongoDB collection whose name is the lowercase
of the class name (class Note -> "note" collection, class PYQ -> "pyq").
Cross-collection references are stored as ObjectIds.

Collections used:
- user
- subject
- note, syllabus, video, pyq
- announcement
- chat, message
- notification
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, model_validator

Role = Literal["student", "teacher", "admin"]
STAFF_ROLES = ("teacher", "admin")

Branch = Literal["CSE", "ECE", "ME", "CE", "EE", "CHE", "BT", "Other"]
BRANCHES = ("CSE", "ECE", "ME", "CE", "EE", "CHE", "BT", "Other")
Year = Annotated[int, Field(ge=1, le=4)]
Semester = Annotated[int, Field(ge=1, le=8)]


class MongoModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


# ----------------------
# Users
# ----------------------
class StudentProfile(BaseModel):
    """Students belong to a cohort; every cohort field is required."""
    role: Literal["student"]
    branch: Branch
    year: Year
    semester: Semester


class StaffProfile(BaseModel):
    role: Literal["teacher", "admin"]


Profile = Annotated[Union[StudentProfile, StaffProfile], Field(discriminator="role")]
profile_adapter = TypeAdapter(Profile)


def profile_fields(profile: Union[StudentProfile, StaffProfile]) -> Dict[str, Any]:
    """Flatten a profile into the user document's role/branch/year/semester."""
    fields = {"role": profile.role, "branch": None, "year": None, "semester": None}
    fields.update(profile.model_dump())
    return fields


class User(MongoModel):
    """Users collection schema"""
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10}$", description="10-digit phone number")
    roll_number: Optional[str] = None
    password: str = Field(..., description="Password hash")
    role: Role = "student"
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None
    avatar: str = "default-avatar.png"
    google_id: Optional[str] = None
    fcm_token: Optional[str] = None
    is_verified: bool = False
    last_active: Optional[datetime] = None
    subjects: List[ObjectId] = Field(default_factory=list, description="Enrolled or taught subjects")

    @model_validator(mode="after")
    def check_student_cohort(self):
        if self.role == "student" and (self.branch is None or self.year is None or self.semester is None):
            raise ValueError("branch, year and semester are required for students")
        return self


class Subject(MongoModel):
    name: str = Field(..., max_length=50)
    code: str = Field(..., min_length=1)
    description: str = Field(..., max_length=500)
    branch: Branch
    year: Year
    semester: Semester
    credits: int = Field(..., ge=1, le=10)
    teachers: List[ObjectId] = Field(default_factory=list)
    syllabus: Optional[ObjectId] = None
    is_elective: bool = False
    is_active: bool = True


# ----------------------
# Content
# ----------------------
class ContentItem(MongoModel):
    """Fields shared by every uploadable content kind"""
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    subject: ObjectId
    branch: Branch
    year: Year
    semester: Semester
    uploaded_by: ObjectId
    is_verified: bool = False
    views: int = 0
    downloads: int = 0


class Rating(MongoModel):
    user: ObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=200)
    created_at: datetime


class Comment(MongoModel):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    text: str = Field(..., min_length=1, max_length=500)
    user: ObjectId
    created_at: datetime

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)


class Note(ContentItem):
    file_url: str
    file_path: str
    file_type: Literal["pdf", "doc", "docx", "ppt", "pptx", "txt"]
    file_size: int
    ratings: List[Rating] = Field(default_factory=list)
    average_rating: float = 0


class Topic(BaseModel):
    title: str
    description: Optional[str] = None


class Unit(BaseModel):
    title: str
    description: str
    topics: List[Topic] = Field(default_factory=list)


class ReferenceBook(BaseModel):
    title: str
    author: str
    link: Optional[str] = None


class Syllabus(ContentItem):
    file_url: str
    file_path: str
    file_type: Literal["pdf", "doc", "docx"]
    file_size: int
    total_marks: int
    passing_marks: int
    exam_pattern: str
    units: List[Unit] = Field(default_factory=list)
    reference_books: List[ReferenceBook] = Field(default_factory=list)
    is_active: bool = True


class Video(ContentItem):
    description: str = Field(..., min_length=1, max_length=1000)
    video_url: str
    file_path: Optional[str] = None
    thumbnail_url: str = "default-thumbnail.jpg"
    is_youtube_video: bool = False
    youtube_id: Optional[str] = None
    duration: Optional[int] = Field(None, description="Seconds")
    tags: List[str] = Field(default_factory=list)
    likes: int = 0
    users_liked: List[ObjectId] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)


ExamType = Literal["Mid-Term", "End-Term", "Quiz", "Assignment"]
Difficulty = Literal["Easy", "Medium", "Hard"]


class PYQ(ContentItem):
    file_url: str
    file_path: str
    file_type: Literal["pdf", "doc", "docx"]
    file_size: int
    exam_type: ExamType
    exam_year: int
    has_solution: bool = False
    solution_file_url: Optional[str] = None
    solution_file_path: Optional[str] = None
    difficulty: Difficulty = "Medium"
    total_marks: Optional[int] = None
    duration: Optional[int] = Field(None, description="Minutes")


# ----------------------
# Announcements
# ----------------------
class Attachment(BaseModel):
    file_url: str
    file_path: str
    file_type: str
    file_name: str
    file_size: int


class TargetAudience(BaseModel):
    """Each field is a concrete value or "All"."""
    branch: Literal["All", "CSE", "ECE", "ME", "CE", "EE", "CHE", "BT", "Other"] = "All"
    year: Literal["All", "1", "2", "3", "4"] = "All"
    semester: Literal["All", "1", "2", "3", "4", "5", "6", "7", "8"] = "All"
    role: Literal["All", "student", "teacher", "admin"] = "All"


Priority = Literal["Low", "Medium", "High", "Urgent"]


class Announcement(MongoModel):
    title: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1, max_length=2000)
    posted_by: ObjectId
    attachments: List[Attachment] = Field(default_factory=list)
    priority: Priority = "Medium"
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)


# ----------------------
# Community
# ----------------------
class Chat(MongoModel):
    chat_name: Optional[str] = None
    is_group_chat: bool = False
    users: List[ObjectId] = Field(default_factory=list)
    latest_message: Optional[ObjectId] = None
    group_admin: Optional[ObjectId] = None
    is_public: bool = False
    subject: Optional[ObjectId] = None
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None

    @model_validator(mode="after")
    def check_group_admin(self):
        if self.is_group_chat and self.group_admin is None:
            raise ValueError("group chats need a group admin")
        if not self.is_group_chat and self.group_admin is not None:
            raise ValueError("direct chats have no group admin")
        return self


class Message(MongoModel):
    sender: ObjectId
    content: str = Field(..., min_length=1)
    chat: ObjectId
    read_by: List[ObjectId] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    is_deleted: bool = False


class Notification(MongoModel):
    """Persisted copy of every push dispatched to a user"""
    user: ObjectId
    title: str
    body: str
    data: Dict[str, str] = Field(default_factory=dict)
    read: bool = False
