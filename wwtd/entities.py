# wwtd/entities.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, TypeAlias
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

UUID: TypeAlias = str
Base = declarative_base()

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLES = (ROLE_USER, ROLE_ASSISTANT)

STATUS_ACTIVE = "active"
STATUS_DELETED = "deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class UserRow(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    name: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    profile_photo: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))

    # NULL means the document never had the field (see QuotaLedger.debit)
    available_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_subscribed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    subscription_plan: Mapped[str | None] = mapped_column(String)

    threads = relationship("MessageThreadRow", cascade="all, delete-orphan")


class MessageThreadRow(Base):
    __tablename__ = "message_threads"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[UUID] = mapped_column(
        String(128),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    date_created: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    preview_message: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE)

    messages = relationship("MessageRow", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_message_threads_user_status", "user_id", "status"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    thread_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("message_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index("ix_messages_thread_timestamp", "thread_id", "timestamp"),
    )


# -----------------------
# Snapshots handed to callers
# -----------------------

@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: str
    profile_photo: str
    available_tokens: int
    is_subscribed: bool
    subscription_expires_at: Optional[datetime] = None
    subscription_plan: Optional[str] = None

    @classmethod
    def from_row(cls, row: UserRow) -> "User":
        return cls(
            id=row.id,
            email=row.email or "",
            name=row.name or "",
            profile_photo=row.profile_photo or "",
            available_tokens=row.available_tokens or 0,
            is_subscribed=bool(row.is_subscribed),
            subscription_expires_at=from_db_time(row.subscription_expires_at),
            subscription_plan=row.subscription_plan,
        )


@dataclass(frozen=True)
class SubscriptionState:
    is_subscribed: bool
    expiration_date: Optional[datetime] = None
    plan_id: Optional[str] = None


@dataclass(frozen=True)
class ConversationThread:
    id: str
    date_created: datetime
    preview_message: str
    model: str
    status: str = STATUS_ACTIVE

    @classmethod
    def from_row(cls, row: MessageThreadRow) -> "ConversationThread":
        return cls(
            id=row.id,
            date_created=from_db_time(row.date_created),
            preview_message=row.preview_message,
            model=row.model,
            status=row.status,
        )


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    timestamp: datetime
    id: str = ""

    @classmethod
    def create(cls, role: str, content: str, timestamp: Optional[datetime] = None) -> "Message":
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role}")
        return cls(role=role, content=content, timestamp=timestamp or utcnow(), id=str(uuid4()))

    @classmethod
    def from_row(cls, row: MessageRow) -> "Message":
        return cls(
            id=row.id,
            role=row.role,
            content=row.content,
            timestamp=from_db_time(row.timestamp),
        )
