"""
Application monitoring and error tracking with Sentry
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.asyncio import AsyncioIntegration

from config import settings


def _scrub_event(event, hint):
    """Drop request bodies: they may carry certificate bytes and passwords"""
    request = event.get("request")
    if request and "data" in request:
        request["data"] = "[filtered]"
    return event


def init_sentry():
    """
    Initialize Sentry for error tracking and performance monitoring
    """
    if not settings.SENTRY_DSN:
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            AsyncioIntegration(),
        ],
        traces_sample_rate=1.0 if settings.ENVIRONMENT == "development" else 0.1,
        send_default_pii=False,
        before_send=_scrub_event,
        release=settings.APP_VERSION,
    )
    return True
