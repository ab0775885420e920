"""
Outbound send path - issues a tracking token, instruments the HTML and hands
the email to the mail transport. The token also travels out-of-band in the
X-Tracking-ID header (and as a SendGrid custom arg) so provider callbacks can
be correlated without parsing the body.
"""
import asyncio
import html as html_lib
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from functools import lru_cache
from typing import Optional, Protocol

from pydantic import BaseModel

from src.schemas.tracking import EngagementEvent, TrackingPayload
from src.services.link_tracking import LinkInstrumenter, get_link_instrumenter
from src.services.message_state import MessageStateMachine
from src.services.tracking_tokens import TokenCodec, TrackingConfigError, get_token_codec

logger = logging.getLogger(__name__)

TRACKING_HEADER = "X-Tracking-ID"
MAX_SEND_ATTEMPTS = 3
SENDGRID_RETRYABLE_STATUS = (429, 500, 502, 503)


class MailTransport(Protocol):
    async def send(self, message: EmailMessage) -> str:
        """Deliver message and return the transport's message id."""
        ...


class TransientTransportError(Exception):
    """Send failure worth retrying (connection drop, 4xx SMTP reply, SendGrid 429/5xx)."""


class SendGridTransport:
    """
    SendGrid v3 mail send. The SDK client is blocking, so the request runs in
    the default executor. SendGrid's own open and click tracking stay off:
    the body already carries our pixel and redirects.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    def build_mail(self, message: EmailMessage):
        from sendgrid.helpers.mail import (
            ClickTracking, Content, CustomArg, Header, Mail, OpenTracking,
            ReplyTo, TrackingSettings,
        )

        mail = Mail(
            from_email=message["From"],
            to_emails=message["To"],
            subject=message["Subject"],
        )
        # text/plain MUST be added before text/html per SendGrid
        mail.content = [
            Content("text/plain", message.get_body(preferencelist=("plain",)).get_content()),
            Content("text/html", message.get_body(preferencelist=("html",)).get_content()),
        ]
        if message["Reply-To"]:
            mail.reply_to = ReplyTo(message["Reply-To"])

        tracking_id = message[TRACKING_HEADER]
        if tracking_id:
            mail.header = Header(TRACKING_HEADER, tracking_id)
            mail.custom_arg = CustomArg("tracking_id", tracking_id)

        mail.tracking_settings = TrackingSettings(
            open_tracking=OpenTracking(enable=False),
            click_tracking=ClickTracking(enable=False, enable_text=False),
        )
        return mail

    def _send_blocking(self, mail) -> str:
        from sendgrid import SendGridAPIClient

        sg = SendGridAPIClient(api_key=self.api_key)
        try:
            response = sg.send(mail)
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            retryable = status_code in SENDGRID_RETRYABLE_STATUS if status_code else True
            if retryable:
                raise TransientTransportError(f"SendGrid status={status_code}: {e}") from e
            raise
        return response.headers.get("X-Message-Id", "")

    async def send(self, message: EmailMessage) -> str:
        mail = self.build_mail(message)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._send_blocking(mail))


class SmtpTransport:
    """Blocking smtplib client run in the default executor. For relays without an HTTP API."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def _send_blocking(self, message: EmailMessage) -> str:
        smtp = None
        try:
            # The constructor opens the connection
            smtp = self._connect()
            if self.port != 465:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)
        except smtplib.SMTPConnectError as e:
            raise TransientTransportError(str(e)) from e
        except smtplib.SMTPResponseException as e:
            if 400 <= e.smtp_code < 500:
                raise TransientTransportError(str(e)) from e
            raise
        except smtplib.SMTPServerDisconnected as e:
            raise TransientTransportError(str(e)) from e
        except smtplib.SMTPException:
            raise
        except OSError as e:
            # refused, unreachable, timed out
            raise TransientTransportError(str(e)) from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except OSError:
                    pass
        return message["Message-ID"].strip("<>")

    async def send(self, message: EmailMessage) -> str:
        if "Message-ID" not in message:
            message["Message-ID"] = make_msgid()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._send_blocking(message))


class SendOptions(BaseModel):
    to: str
    subject: str
    html: str
    text: Optional[str] = None
    from_email: Optional[str] = None
    reply_to: Optional[str] = None
    tracking_id: Optional[str] = None
    message_id: Optional[str] = None
    contact_id: Optional[str] = None
    account_id: Optional[str] = None


def _html_to_text(body_html: str) -> str:
    plain = re.sub(r"<[^>]+>", "", body_html or "")
    return re.sub(r"\s+", " ", html_lib.unescape(plain)).strip()


def build_email(options: SendOptions, html_body: str, tracking_id: str, default_from: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = options.from_email or default_from
    message["To"] = options.to
    message["Subject"] = options.subject
    if options.reply_to:
        message["Reply-To"] = options.reply_to
    message[TRACKING_HEADER] = tracking_id
    # text/plain first, html as the preferred alternative
    message.set_content(options.text or _html_to_text(options.html))
    message.add_alternative(html_body, subtype="html")
    return message


async def send_tracked_email(
    options: SendOptions,
    codec: TokenCodec,
    instrumenter: LinkInstrumenter,
    transport: MailTransport,
    default_from: str,
    state_machine: Optional[MessageStateMachine] = None,
) -> dict:
    """
    Send an instrumented email.

    Returns:
        {"success": bool, "email_id": str|None, "tracking_id": str|None, "error": str|None}
    """
    if not options.tracking_id and not options.message_id:
        # Tokens always bind a message
        return {"success": False, "email_id": None, "tracking_id": None,
                "error": "message_id required"}

    tracking_id = options.tracking_id or codec.issue(
        TrackingPayload(
            message_id=options.message_id,
            contact_id=options.contact_id,
            account_id=options.account_id,
        )
    )

    if not options.to or "@" not in options.to:
        return {"success": False, "email_id": None, "tracking_id": tracking_id,
                "error": "invalid recipient email"}

    html_body = instrumenter.instrument(options.html, tracking_id)
    message = build_email(options, html_body, tracking_id, default_from)

    # Retry with exponential backoff on transient errors
    email_id = None
    try:
        for attempt in range(MAX_SEND_ATTEMPTS):
            try:
                email_id = await transport.send(message)
                break
            except TransientTransportError as send_err:
                if attempt == MAX_SEND_ATTEMPTS - 1:
                    raise
                wait_seconds = 2 ** (attempt + 1)  # 2s, 4s
                logger.warning(
                    "Send attempt %d failed (%s), retrying in %ds",
                    attempt + 1, str(send_err), wait_seconds,
                )
                await asyncio.sleep(wait_seconds)
    except Exception as e:
        logger.error("Email send failed: to=%s error=%s", options.to[:20] + "***", str(e))
        return {"success": False, "email_id": None, "tracking_id": tracking_id, "error": str(e)}

    logger.info(
        "Tracked email sent: to=%s subject=%s",
        options.to[:20] + "***", options.subject[:30],
        extra={"message_id": options.message_id},
    )

    if state_machine is not None and options.message_id:
        try:
            await state_machine.apply(
                EngagementEvent(message_id=options.message_id, event_type="sent", email_id=email_id)
            )
        except Exception as e:
            # The email is out; a failed status write must not report a failed send
            logger.error("Failed to mark message %s sent: %s", options.message_id[:8], str(e))

    return {"success": True, "email_id": email_id, "tracking_id": tracking_id, "error": None}


@lru_cache()
def get_mail_transport() -> MailTransport:
    """
    Transport for EMAIL_PROVIDER. Sending stays disabled until the chosen
    provider is configured (SENDGRID_API_KEY or EMAIL_HOST).
    """
    from src.config import get_settings
    settings = get_settings()
    if settings.email_provider == "sendgrid":
        if not settings.sendgrid_api_key:
            raise TrackingConfigError("SENDGRID_API_KEY is not configured")
        return SendGridTransport(settings.sendgrid_api_key)

    if not settings.email_host:
        raise TrackingConfigError("EMAIL_HOST is not configured")
    return SmtpTransport(
        settings.email_host,
        port=settings.email_port,
        user=settings.email_user,
        password=settings.email_password,
    )


async def send_configured_email(
    options: SendOptions,
    state_machine: Optional[MessageStateMachine] = None,
) -> dict:
    """send_tracked_email wired to the process-wide codec, instrumenter and transport."""
    from src.config import get_settings
    return await send_tracked_email(
        options,
        codec=get_token_codec(),
        instrumenter=get_link_instrumenter(),
        transport=get_mail_transport(),
        default_from=get_settings().email_from,
        state_machine=state_machine,
    )


def render_template(template_name: str, data: dict) -> dict:
    """Minimal built-in templates. Returns {"html": str, "text": str}."""
    content = data.get("content") or ""
    signature = data.get("signature") or "Sent via RelateAI"

    if template_name == "basic":
        body_html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #333;">{data.get("subject") or "Message from RelateAI"}</h1>
  <div style="margin: 20px 0; line-height: 1.5;">{content}</div>
  <div style="margin-top: 30px; padding-top: 15px; border-top: 1px solid #eee; font-size: 12px; color: #666;">{signature}</div>
</div>
"""
        return {"html": body_html, "text": content}

    if template_name == "follow_up":
        body_html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #333;">Following up</h1>
  <p>I wanted to follow up on our previous conversation.</p>
  <div style="margin: 20px 0; line-height: 1.5;">{content}</div>
  <div style="margin-top: 30px; padding-top: 15px; border-top: 1px solid #eee; font-size: 12px; color: #666;">{signature}</div>
</div>
"""
        text = f"Following up\n\nI wanted to follow up on our previous conversation.\n\n{content}"
        return {"html": body_html, "text": text}

    return {"html": f"<div>{content}</div>", "text": content}
