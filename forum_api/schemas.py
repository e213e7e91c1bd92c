from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from forum_api.models import UserRole


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=1, max_length=150)
    # Admin accounts are only created by other admins.
    role: Literal["student", "teacher"] = "student"


class LoginRequest(BaseModel):
    email: str
    password: str


# --- User ---

class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    full_name: str
    role: UserRole
    is_active: bool
    avatar: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    full_name: str = Field(min_length=1, max_length=150)
    role: UserRole
    password: str = Field(min_length=6)


class UserUpdate(BaseModel):
    username: str | None = Field(None, min_length=1, max_length=50)
    email: str | None = Field(None, min_length=3, max_length=255)
    full_name: str | None = Field(None, min_length=1, max_length=150)
    role: UserRole | None = None
    is_active: bool | None = None


class PasswordReset(BaseModel):
    new_password: str = Field(min_length=6)


# --- Post ---

class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    content: str = Field(min_length=1)
    tags: list[str] = []


class PostResponse(BaseModel):
    id: int
    title: str
    content: str
    tags: list[str]
    author_id: int
    author_name: str | None
    author_role: UserRole | None
    votes: int
    upvoted_by: list[int] = []
    downvoted_by: list[int] = []
    comment_count: int = 0
    created_at: datetime
    updated_at: datetime | None = None


# --- Comment ---

class CommentCreate(BaseModel):
    content: str = Field(min_length=1)
    parent_comment_id: int | None = None


class CommentResponse(BaseModel):
    id: int
    content: str
    post_id: int
    author_id: int
    author_name: str | None
    author_role: UserRole | None
    parent_comment_id: int | None = None
    votes: int
    upvoted_by: list[int] = []
    downvoted_by: list[int] = []
    created_at: datetime
    updated_at: datetime | None = None


# --- Vote ---

class VoteRequest(BaseModel):
    # Validated by the vote service so an unknown value is a 400 raised
    # before any database access.
    type: str


class VoteResponse(BaseModel):
    success: bool = True
    votes: int


class ReconcileReport(BaseModel):
    success: bool = True
    posts: int
    comments: int


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_users: int
    total_posts: int
    total_comments: int
    total_post_votes: int
    total_comment_votes: int
    avg_comments_per_post: float
    cache_info: dict = {}
