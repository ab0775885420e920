"""
Message persistence for engagement tracking.

Every write is a single guarded UPDATE in its own short transaction:
counters use `n = n + 1` so concurrent opens are never lost, and status
changes carry `WHERE status IN (...)` so a stale write cannot downgrade a
message that has already moved on.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.message import Message
from src.models.message_click import MessageClick
from src.schemas.tracking import ReplyContent

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    async def get(self, message_id: str) -> Optional[Message]: ...

    async def find_by_email_id(self, email_id: str) -> Optional[Message]: ...

    async def find_by_thread_id(self, thread_id: str) -> Optional[Message]: ...

    async def record_engagement(
        self, message_id: str, event_type: str, at: datetime, url: Optional[str] = None,
    ) -> bool: ...

    async def transition_status(
        self,
        message_id: str,
        new_status: str,
        allowed_from: Sequence[str],
        timestamp_field: Optional[str],
        at: datetime,
    ) -> tuple[bool, Optional[str]]: ...

    async def create_inbound_reply(
        self, original: Message, reply: ReplyContent, at: datetime,
    ) -> str: ...

    async def set_email_id(self, message_id: str, email_id: str) -> bool: ...


def _engagement_values(event_type: str, at: datetime) -> dict:
    if event_type == "open":
        return {
            "opens": Message.opens + 1,
            "last_opened_at": at,
            "opened_at": func.coalesce(Message.opened_at, at),
        }
    if event_type == "click":
        return {
            "clicks": Message.clicks + 1,
            "last_clicked_at": at,
        }
    if event_type == "reply":
        return {
            "replies": Message.replies + 1,
            "last_replied_at": at,
            "replied_at": func.coalesce(Message.replied_at, at),
        }
    raise ValueError(f"No engagement counter for event type: {event_type}")


class SqlMessageStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, message_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            return await session.get(Message, message_id)

    async def find_by_email_id(self, email_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message).where(Message.email_id == email_id).limit(1)
            )
            return result.scalar_one_or_none()

    async def find_by_thread_id(self, thread_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.thread_id == thread_id, Message.direction == "outbound")
                .order_by(Message.created_at.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def record_engagement(
        self,
        message_id: str,
        event_type: str,
        at: datetime,
        url: Optional[str] = None,
    ) -> bool:
        """Increment the counter for event_type. Returns False if the message is unknown."""
        values = _engagement_values(event_type, at)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Message).where(Message.id == message_id).values(**values)
            )
            if result.rowcount == 0:
                await session.rollback()
                return False
            if event_type == "click" and url:
                session.add(MessageClick(message_id=message_id, url=url, clicked_at=at))
            await session.commit()
            return True

    async def transition_status(
        self,
        message_id: str,
        new_status: str,
        allowed_from: Sequence[str],
        timestamp_field: Optional[str],
        at: datetime,
    ) -> tuple[bool, Optional[str]]:
        """
        Compare-and-set on status. Returns (changed, current_status);
        current_status is None when the message does not exist.
        """
        values: dict = {"status": new_status}
        if timestamp_field:
            column = getattr(Message, timestamp_field)
            values[timestamp_field] = func.coalesce(column, at)

        async with self._session_factory() as session:
            result = await session.execute(
                update(Message)
                .where(Message.id == message_id, Message.status.in_(list(allowed_from)))
                .values(**values)
            )
            changed = result.rowcount > 0
            await session.commit()

            if changed:
                return True, new_status
            current = await session.execute(
                select(Message.status).where(Message.id == message_id)
            )
            return False, current.scalar_one_or_none()

    async def create_inbound_reply(
        self,
        original: Message,
        reply: ReplyContent,
        at: datetime,
    ) -> str:
        """Store the reply as a new inbound message threaded to the original."""
        inbound = Message(
            user_id=original.user_id,
            contact_id=original.contact_id,
            account_id=original.account_id,
            subject=reply.subject or f"Re: {original.subject or ''}".rstrip(),
            content=reply.text or reply.html or "",
            channel="email",
            direction="inbound",
            status="replied",
            thread_id=original.thread_id or original.id,
            parent_message_id=original.id,
            email_id=reply.email_id,
            sent_at=at,
            delivered_at=at,
            extra_data={
                "received_at": at.isoformat(),
                "from_email": reply.from_email or "",
                "original_recipient": reply.to or "",
                "headers": reply.headers or {},
            },
        )
        async with self._session_factory() as session:
            session.add(inbound)
            await session.commit()
        logger.info(
            "Inbound reply %s stored for message %s",
            inbound.id[:8], original.id[:8],
            extra={"message_id": original.id},
        )
        return inbound.id

    async def set_email_id(self, message_id: str, email_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Message).where(Message.id == message_id).values(email_id=email_id)
            )
            await session.commit()
            return result.rowcount > 0


def get_message_store() -> MessageStore:
    """FastAPI dependency - the SQL store over the shared session factory."""
    from src.database import get_session_factory
    return SqlMessageStore(get_session_factory())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
