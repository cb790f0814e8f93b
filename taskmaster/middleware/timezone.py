"""
Timezone Middleware

Resolves the requester's timezone once per request so that downstream
handlers can read ``request.state.requested_timezone`` without re-running
detection logic.
"""

import logging
from fastapi import Request

from taskmaster.core.config import settings
from taskmaster.utils.timezone import resolve_timezone_from_request

logger = logging.getLogger(__name__)


class TimezoneMiddleware:
    """ASGI middleware attaching the resolved timezone to request state"""

    def __init__(self, app, fallback: str = None):
        self.app = app
        self.fallback = fallback or settings.DEFAULT_TIMEZONE

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Request state is backed by scope["state"], so downstream requests see it
        request = Request(scope, receive)
        timezone = resolve_timezone_from_request(request, fallback=self.fallback)
        logger.debug("Resolved timezone %s for %s %s", timezone, request.method, request.url.path)
        await self.app(scope, receive, send)
