"""
Tracking schemas - token payloads, engagement events and webhook bodies.
"""
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


EventType = Literal["open", "click", "reply", "delivery", "sent", "bounce"]


class TrackingPayload(BaseModel):
    """What a tracking token binds: a message plus optional correlation IDs."""
    message_id: str = Field(min_length=1)
    contact_id: Optional[str] = None
    account_id: Optional[str] = None


class SignedTrackingPayload(TrackingPayload):
    """Payload as recovered from a verified token."""
    issued_at: int  # epoch milliseconds


class TokenVerification(BaseModel):
    valid: bool
    payload: Optional[SignedTrackingPayload] = None


class ReplyContent(BaseModel):
    """Inbound reply as posted by the mail provider."""
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    from_email: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    headers: dict[str, Any] = Field(default_factory=dict)
    email_id: Optional[str] = Field(default=None, alias="emailId")


class EngagementEvent(BaseModel):
    message_id: str
    event_type: EventType
    occurred_at: Optional[datetime] = None
    url: Optional[str] = None
    reply: Optional[ReplyContent] = None
    email_id: Optional[str] = None  # provider message id, for "sent"


class TransitionResult(BaseModel):
    found: bool
    status_changed: bool = False
    status: Optional[str] = None
    reply_message_id: Optional[str] = None


class ProviderWebhookPayload(BaseModel):
    """Provider-to-server event (reply, delivery, bounce)."""
    model_config = ConfigDict(populate_by_name=True)

    event: str
    tracking_id: Optional[str] = Field(default=None, alias="trackingId")
    message_id: Optional[str] = Field(default=None, alias="messageId")
    email_id: Optional[str] = Field(default=None, alias="emailId")
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    in_reply_to: Optional[str] = Field(default=None, alias="inReplyTo")
    from_email: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    headers: dict[str, Any] = Field(default_factory=dict)

    def reply_content(self) -> ReplyContent:
        return ReplyContent(
            subject=self.subject,
            text=self.text,
            html=self.html,
            from_email=self.from_email,
            to=self.to,
            headers=self.headers,
            email_id=self.email_id,
        )
