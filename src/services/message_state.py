"""
Message lifecycle - applies engagement events to a message.

Counters always move; status only moves forward. The allowed source states
below are enforced by the store as a compare-and-set, so events arriving out
of order (an open after a reply, a delivery receipt after an open) can never
downgrade a message.
"""
import logging
from typing import Optional

from fastapi import Depends

from src.schemas.tracking import EngagementEvent, ReplyContent, TransitionResult
from src.services.message_store import MessageStore, get_message_store, utcnow

logger = logging.getLogger(__name__)

# event -> (allowed current states, new state, first-writer timestamp field)
TRANSITIONS: dict[str, tuple[tuple[str, ...], str, Optional[str]]] = {
    "open": (("draft", "sent", "delivered", "bounced", "failed"), "opened", "opened_at"),
    "delivery": (("sent",), "delivered", "delivered_at"),
    "reply": (("draft", "sent", "delivered", "opened", "bounced", "failed"), "replied", "replied_at"),
    "sent": (("draft",), "sent", "sent_at"),
    "bounce": (("sent", "delivered"), "bounced", "bounced_at"),
}

# Events that bump an engagement counter regardless of status outcome
COUNTED_EVENTS = frozenset({"open", "click", "reply"})


class MessageStateMachine:
    def __init__(self, store: MessageStore):
        self.store = store

    async def apply(self, event: EngagementEvent) -> TransitionResult:
        """
        Apply one engagement event. Unknown message ids are a no-op success
        (found=False); the caller has no way to fix a dangling token.
        """
        at = event.occurred_at or utcnow()
        message_id = event.message_id

        original = None
        if event.event_type == "reply":
            original = await self.store.get(message_id)
            if original is None:
                return self._unknown(event)

        if event.event_type in COUNTED_EVENTS:
            found = await self.store.record_engagement(
                message_id, event.event_type, at, url=event.url,
            )
            if not found:
                return self._unknown(event)

        if event.event_type == "sent" and event.email_id:
            await self.store.set_email_id(message_id, event.email_id)

        transition = TRANSITIONS.get(event.event_type)
        if transition is None:
            # click: engagement evidence only, not part of the lifecycle
            return TransitionResult(found=True, status_changed=False)

        allowed_from, new_status, timestamp_field = transition
        changed, status = await self.store.transition_status(
            message_id, new_status, allowed_from, timestamp_field, at,
        )
        if status is None:
            return self._unknown(event)

        if changed:
            logger.info(
                "Message %s -> %s on %s",
                message_id[:8], new_status, event.event_type,
                extra={"message_id": message_id, "event_type": event.event_type},
            )

        result = TransitionResult(found=True, status_changed=changed, status=status)

        if original is not None:
            result.reply_message_id = await self.store.create_inbound_reply(
                original, event.reply or ReplyContent(), at,
            )

        return result

    def _unknown(self, event: EngagementEvent) -> TransitionResult:
        # Valid signature but no message: deleted record or a scan of the token space
        logger.warning(
            "Engagement event for unknown message %s",
            event.message_id[:12],
            extra={"message_id": event.message_id, "event_type": event.event_type},
        )
        return TransitionResult(found=False)


def get_state_machine(store: MessageStore = Depends(get_message_store)) -> MessageStateMachine:
    return MessageStateMachine(store)
