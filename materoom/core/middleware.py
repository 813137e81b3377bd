"""
Session Middleware - loads session from Redis for each HTTP request.
"""
import logging
from typing import Callable

import redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from materoom.session import extract_token, get_session

logger = logging.getLogger(__name__)


class SessionMiddleware(BaseHTTPMiddleware):
    """Loads session from Redis based on Authorization header."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.session = {}
        request.state.token = None

        token = extract_token(request.headers.get("authorization"))
        if token:
            request.state.token = token
            try:
                user_data = get_session(token)
            except redis.RedisError as e:
                logger.error("Session store unavailable: %s", e)
                user_data = None
            if user_data:
                request.state.session = user_data

        return await call_next(request)
