"""
Message model - one outbound or inbound communication with a contact.
The tracking subsystem owns the lifecycle subset: status, first-event
timestamps and engagement counters.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

# Lifecycle order; bounced and failed branch off after sent
MESSAGE_STATUSES = ("draft", "sent", "delivered", "opened", "replied", "bounced", "failed")
MESSAGE_CHANNELS = ("email", "linkedin", "twitter", "sms", "other")


def _new_id() -> str:
    return uuid.uuid4().hex


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)

    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    contact_id: Mapped[Optional[str]] = mapped_column(String(64))
    account_id: Mapped[Optional[str]] = mapped_column(String(64))

    subject: Mapped[Optional[str]] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text, default="")
    channel: Mapped[str] = mapped_column(String(20), default="email")
    direction: Mapped[str] = mapped_column(String(10), default="outbound")  # outbound, inbound
    status: Mapped[str] = mapped_column(String(20), default="draft")

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    bounced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Engagement counters - increment only
    opens: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    clicks: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    replies: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Threading
    thread_id: Mapped[Optional[str]] = mapped_column(String(64))
    parent_message_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Provider message id of the sent email (In-Reply-To correlation)
    email_id: Mapped[Optional[str]] = mapped_column(String(255))

    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_messages_contact_id", "contact_id"),
        Index("ix_messages_thread_id", "thread_id"),
        Index("ix_messages_status", "status"),
        Index("ix_messages_email_id", "email_id"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.id[:8]} {self.direction} ({self.status})>"
