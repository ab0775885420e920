"""
Webhook authentication for provider-to-server calls.

Mail providers post reply and delivery notifications with a shared secret in
the X-Webhook-Secret header. This secret is separate from the
tracking-token signing secret: it guards the provider boundary, not the
recipient-facing one.
"""
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


def verify_shared_secret(expected: Optional[str], provided: Optional[str]) -> bool:
    """
    Constant-time comparison of the configured secret and the header value.
    An unconfigured secret rejects everything.
    """
    if not expected:
        logger.error(
            "EMAIL_WEBHOOK_SECRET not set - rejecting webhook traffic. "
            "Configure the secret to accept provider callbacks."
        )
        return False
    if not provided:
        logger.warning("Webhook call missing %s header", WEBHOOK_SECRET_HEADER)
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_webhook_request(request, expected: Optional[str]) -> bool:
    """Check the shared-secret header on an incoming request."""
    return verify_shared_secret(expected, request.headers.get(WEBHOOK_SECRET_HEADER, ""))
