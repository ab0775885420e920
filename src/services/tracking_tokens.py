"""
Tracking token codec - self-verifying bearer tokens for opens, clicks and replies.

A token is URL-safe base64 (no padding) of {"data": "<payload json>", "sig": "<hex>"}
where sig is HMAC-SHA256 over the exact bytes of data. Any replica holding the
signing secret can verify a token without a lookup table.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from functools import lru_cache
from typing import Callable, Optional

from pydantic import ValidationError

from src.schemas.tracking import SignedTrackingPayload, TokenVerification, TrackingPayload

logger = logging.getLogger(__name__)

# Tolerated clock skew between replicas when checking issued_at
MAX_FUTURE_SKEW_MS = 5 * 60 * 1000


class TrackingConfigError(Exception):
    """Raised at construction time when tracking secrets are missing."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class TokenCodec:
    """Issues and verifies tracking tokens with a server-held secret."""

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = 0,
        clock: Optional[Callable[[], int]] = None,
    ):
        if not secret or not secret.strip():
            raise TrackingConfigError("Tracking signing secret is not configured")
        self._key = secret.encode("utf-8")
        self._max_age_ms = max(0, max_age_seconds) * 1000
        self._clock = clock or _now_ms

    def _sign(self, data: bytes) -> str:
        return hmac.new(self._key, data, hashlib.sha256).hexdigest()

    def issue(self, payload: TrackingPayload) -> str:
        """Sign payload plus issued_at and return the opaque token string."""
        body = payload.model_dump(exclude_none=True)
        body["issued_at"] = self._clock()
        data = json.dumps(body, sort_keys=True, separators=(",", ":"))
        envelope = json.dumps(
            {"data": data, "sig": self._sign(data.encode("utf-8"))},
            separators=(",", ":"),
        )
        return _b64encode(envelope.encode("utf-8"))

    def verify(self, token: str) -> TokenVerification:
        """
        Verify a token. Never raises: malformed and forged tokens both come
        back as valid=False so callers cannot tell them apart.
        """
        invalid = TokenVerification(valid=False)
        if not token or not isinstance(token, str):
            return invalid

        try:
            envelope = json.loads(_b64decode(token.strip()))
        except (ValueError, binascii.Error, UnicodeError):
            return invalid

        if not isinstance(envelope, dict):
            return invalid
        data = envelope.get("data")
        sig = envelope.get("sig")
        if not isinstance(data, str) or not isinstance(sig, str):
            return invalid

        expected = self._sign(data.encode("utf-8"))
        if not hmac.compare_digest(expected, sig):
            return invalid

        try:
            payload = SignedTrackingPayload.model_validate_json(data)
        except ValidationError:
            return invalid

        if self._max_age_ms and not self._within_age(payload.issued_at):
            logger.info("Expired tracking token for message %s", payload.message_id[:12])
            return invalid

        return TokenVerification(valid=True, payload=payload)

    def _within_age(self, issued_at: int) -> bool:
        now = self._clock()
        if issued_at > now + MAX_FUTURE_SKEW_MS:
            return False
        return now - issued_at <= self._max_age_ms


@lru_cache()
def get_token_codec() -> TokenCodec:
    """Process-wide codec built from settings. Fails fast on a missing secret."""
    from src.config import get_settings
    settings = get_settings()
    return TokenCodec(
        settings.tracking_signing_secret,
        max_age_seconds=settings.tracking_token_max_age_seconds,
    )
