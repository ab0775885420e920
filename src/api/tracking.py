"""
Email engagement tracking - public pixel/redirect endpoints and reply webhooks.

The pixel and redirect are hit by mail clients and link-followers, so they are
error-opaque: a broken tracking pipeline must never break email rendering or
link navigation. The webhooks are provider-to-server and may surface errors.
"""
import asyncio
import base64
import json
import logging
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

from src.api.rate_limit import is_rate_limited
from src.config import Settings, get_settings
from src.models.message import Message
from src.schemas.tracking import EngagementEvent, ProviderWebhookPayload, ReplyContent
from src.services.message_state import MessageStateMachine, get_state_machine
from src.services.message_store import get_message_store
from src.services.tracking_tokens import TokenCodec, get_token_codec
from src.utils.logging import mask_token
from src.utils.webhook_signatures import verify_webhook_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tracking"])

# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

PIXEL_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Provider event names -> engagement events
PROVIDER_EVENTS = {
    "reply": "reply",
    "delivery": "delivery",
    "delivered": "delivery",
    "bounce": "bounce",
    "bounced": "bounce",
    "open": "open",
}


def pixel_response() -> Response:
    return Response(content=TRANSPARENT_GIF, media_type="image/gif", headers=PIXEL_HEADERS)


def _is_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and bool(parts.netloc)


async def _apply_quietly(
    machine: MessageStateMachine,
    event: EngagementEvent,
    timeout_seconds: float,
) -> None:
    """Run a tracking update under a timeout. Failures are logged and dropped."""
    try:
        await asyncio.wait_for(machine.apply(event), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Tracking update timed out after %.1fs for message %s",
            timeout_seconds, event.message_id[:12],
            extra={"message_id": event.message_id, "event_type": event.event_type},
        )
    except Exception as e:
        logger.error(
            "Tracking update failed for message %s: %s",
            event.message_id[:12], str(e),
            exc_info=True,
            extra={"message_id": event.message_id, "event_type": event.event_type},
        )


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})


def _coerce_headers(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
        return {"raw": raw}
    return {}


async def _read_body(request: Request) -> dict:
    """Provider bodies arrive as JSON or as form posts (inbound parse)."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        data = await request.json()
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
    else:
        form = await request.form()
        data = {key: value for key, value in form.items() if isinstance(value, str)}
    if "headers" in data:
        data["headers"] = _coerce_headers(data["headers"])
    return data


def _tracking_parts(request: Request) -> tuple[TokenCodec, MessageStateMachine]:
    """
    Codec and state machine for the recipient-facing endpoints. Resolved in
    the handler rather than through Depends so a broken database or signing
    key still ends in a pixel or a redirect. App dependency overrides apply.
    """
    overrides = request.app.dependency_overrides
    codec = overrides.get(get_token_codec, get_token_codec)()
    if get_state_machine in overrides:
        return codec, overrides[get_state_machine]()
    store = overrides.get(get_message_store, get_message_store)()
    return codec, get_state_machine(store)


# === OPEN PIXEL ===

@router.get("/pixel/{token}")
async def track_pixel(
    token: str,
    request: Request,
    settings: Settings = Depends(get_settings),
):
    """Open tracking. Always returns the pixel, whatever happens internally."""
    try:
        if is_rate_limited(request):
            logger.info("Pixel hit over rate limit, not recorded: %s", mask_token(token))
            return pixel_response()

        codec, machine = _tracking_parts(request)
        verification = codec.verify(token)
        if verification.valid and verification.payload:
            await _apply_quietly(
                machine,
                EngagementEvent(message_id=verification.payload.message_id, event_type="open"),
                settings.tracking_update_timeout_seconds,
            )
        else:
            logger.info("Pixel hit with invalid token %s", mask_token(token))
    except Exception as e:
        logger.error("Pixel tracking error: %s", str(e), exc_info=True)

    return pixel_response()


# === CLICK REDIRECT ===

@router.get("/redirect")
@router.get("/redirect/")
async def track_redirect_missing_token():
    raise HTTPException(status_code=400, detail="Invalid parameters")


@router.get("/redirect/{token}")
async def track_redirect(
    token: str,
    request: Request,
    url: Optional[str] = None,
    settings: Settings = Depends(get_settings),
):
    """
    Click tracking. Missing parameters are a caller bug and get a 400;
    anything that goes wrong while recording still redirects.
    """
    target = (url or "").strip()
    if not token.strip() or not target:
        raise HTTPException(status_code=400, detail="Invalid parameters")
    if not _is_http_url(target):
        logger.warning("Redirect refused for non-http target: %s", target[:40])
        raise HTTPException(status_code=400, detail="Invalid redirect target")

    try:
        if is_rate_limited(request):
            logger.info("Click over rate limit, not recorded: %s", mask_token(token))
            return RedirectResponse(url=target, status_code=302)

        codec, machine = _tracking_parts(request)
        verification = codec.verify(token)
        if verification.valid and verification.payload:
            await _apply_quietly(
                machine,
                EngagementEvent(
                    message_id=verification.payload.message_id,
                    event_type="click",
                    url=target,
                ),
                settings.tracking_update_timeout_seconds,
            )
        else:
            logger.info("Redirect with invalid token %s", mask_token(token))
    except Exception as e:
        logger.error("Click tracking error: %s", str(e), exc_info=True)

    return RedirectResponse(url=target, status_code=302)


# === REPLY WEBHOOKS (provider-to-server, shared secret) ===

@router.post("/webhook/reply")
@router.post("/webhook/reply/")
async def reply_webhook_missing_token(
    request: Request,
    settings: Settings = Depends(get_settings),
):
    if not verify_webhook_request(request, settings.email_webhook_secret):
        return _unauthorized()
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid tracking ID"})


@router.post("/webhook/reply/{token}")
async def reply_webhook(
    token: str,
    request: Request,
    codec: TokenCodec = Depends(get_token_codec),
    machine: MessageStateMachine = Depends(get_state_machine),
    settings: Settings = Depends(get_settings),
):
    """Inbound reply keyed by the tracking token of the original email."""
    if not verify_webhook_request(request, settings.email_webhook_secret):
        logger.warning("Rejected reply webhook: invalid secret")
        return _unauthorized()

    if not token.strip():
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid tracking ID"})

    try:
        reply = ReplyContent.model_validate(await _read_body(request))
    except (ValueError, ValidationError) as e:
        logger.warning("Reply webhook with malformed body: %s", str(e))
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid payload"})

    try:
        verification = codec.verify(token)
        if not verification.valid or not verification.payload:
            logger.info("Reply webhook with invalid token %s", mask_token(token))
            return {"success": True}

        await machine.apply(
            EngagementEvent(
                message_id=verification.payload.message_id,
                event_type="reply",
                reply=reply,
            )
        )
        return {"success": True}
    except Exception as e:
        logger.error("Reply webhook processing error: %s", str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Error processing reply"},
        )


async def _resolve_message(
    payload: ProviderWebhookPayload,
    codec: TokenCodec,
    machine: MessageStateMachine,
) -> Optional[Message]:
    """Correlate a provider event: tracking token, message id, In-Reply-To, thread."""
    store = machine.store
    if payload.tracking_id:
        verification = codec.verify(payload.tracking_id)
        if verification.valid and verification.payload:
            message = await store.get(verification.payload.message_id)
            if message:
                return message
    if payload.message_id:
        message = await store.get(payload.message_id)
        if message:
            return message
    if payload.in_reply_to:
        # Message-IDs are stored as the transport returned them, with or without <>
        raw = payload.in_reply_to.strip()
        for candidate in dict.fromkeys((raw, raw.strip("<>"), f"<{raw.strip('<>')}>")):
            message = await store.find_by_email_id(candidate)
            if message:
                return message
    if payload.thread_id:
        return await store.find_by_thread_id(payload.thread_id)
    return None


@router.post("/webhook")
async def provider_webhook(
    request: Request,
    codec: TokenCodec = Depends(get_token_codec),
    machine: MessageStateMachine = Depends(get_state_machine),
    settings: Settings = Depends(get_settings),
):
    """Provider reply/delivery/bounce notifications, secured by X-Webhook-Secret."""
    if not verify_webhook_request(request, settings.email_webhook_secret):
        logger.warning("Rejected provider webhook: invalid secret")
        return _unauthorized()

    try:
        payload = ProviderWebhookPayload.model_validate(await _read_body(request))
    except (ValueError, ValidationError) as e:
        logger.warning("Provider webhook with malformed body: %s", str(e))
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid payload"})

    event_type = PROVIDER_EVENTS.get(payload.event.strip().lower())
    if event_type is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": f"Unsupported event: {payload.event[:32]}"},
        )

    try:
        original = await _resolve_message(payload, codec, machine)
        if original is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": "Original message not found"},
            )

        await machine.apply(
            EngagementEvent(
                message_id=original.id,
                event_type=event_type,
                reply=payload.reply_content() if event_type == "reply" else None,
            )
        )
        return {"success": True, "message": "Webhook processed successfully"}
    except Exception as e:
        logger.error("Provider webhook processing error: %s", str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Failed to process webhook"},
        )
