"""
RelateAI engagement tracking - pixel, redirect and reply webhook service.
"""
import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.rate_limit import RateLimitMiddleware
from src.api.router import api_router
from src.config import Settings, get_settings
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    redact_tokens,
    set_correlation_id,
)

logger = logging.getLogger("relate.tracking")

CORRELATION_HEADER = "X-Correlation-ID"
_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID to the request context and echoes it back.
    Caller-supplied IDs are reused only when they are short and log-safe;
    the pixel and redirect routes are public, so the header is untrusted.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        incoming = request.headers.get(CORRELATION_HEADER, "")
        cid = incoming if _CORRELATION_ID.match(incoming) else generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _scrub_event(event, hint):
    """Sentry before_send: request URLs on tracking routes carry bearer tokens."""
    request = event.get("request") or {}
    if isinstance(request.get("url"), str):
        request["url"] = redact_tokens(request["url"])
    return event


def _init_sentry(settings: Settings) -> None:
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.app_env,
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=_scrub_event,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Tracking service starting (env=%s)", settings.app_env)

    # Refuse to start without a signing key
    from src.services.tracking_tokens import get_token_codec
    get_token_codec()

    if not settings.email_webhook_secret:
        logger.warning("EMAIL_WEBHOOK_SECRET not set - reply and provider webhooks will answer 401")
    if settings.rate_limit_backend == "memory":
        logger.info("Rate limit buckets are per-process; set RATE_LIMIT_BACKEND=redis to share them")

    if settings.sentry_dsn:
        _init_sentry(settings)

    yield

    from src.database import dispose_engine
    from src.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("Tracking service stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="RelateAI Tracking",
        description="Email engagement tracking and webhook ingestion",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Added last runs first: rejections from the limiter still carry a correlation ID
    application.add_middleware(RateLimitMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
