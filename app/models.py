from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import field_validator
from sqlalchemy import DateTime
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


class TaskFilter(str, Enum):
    ALL = "All"
    ACTIVE = "Active"
    COMPLETED = "Completed"

    @classmethod
    def parse(cls, raw: str | None) -> "TaskFilter":
        """Lenient parse for query strings; unknown values fall back to All."""
        if not raw:
            return cls.ALL
        for member in cls:
            if member.value.lower() == raw.strip().lower():
                return member
        return cls.ALL


class User(SQLModel, table=True):
    """Account row owned by the session provider"""

    __tablename__ = "users"

    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True, max_length=320)
    password_hash: str
    confirmed: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class RevokedSession(SQLModel, table=True):
    """Signed-out session token id, kept until the token would expire"""

    __tablename__ = "revoked_sessions"

    jti: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(index=True)
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200)
    priority: Priority = Field(default=Priority.LOW)


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "todos"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    completed: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value


class TaskResponse(TaskBase):
    """Cached row as seen by the controller and templates"""

    id: int
    user_id: str
    completed: bool
    created_at: datetime

    model_config = {"from_attributes": True}


@dataclass(frozen=True)
class Session:
    """Authenticated session handed out by the session provider."""

    user_id: str
    email: str
    token: str
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return get_utc_now() >= self.expires_at


class DragStart(SQLModel):
    """Body of a drag-start gesture"""

    drag_id: int


class DragEnd(SQLModel):
    """Body of a drop; a missing drop_id means the drag was cancelled"""

    drag_id: int | None = None
    drop_id: int | None = None
    filter: TaskFilter = TaskFilter.ALL
