"""FastAPI middleware for request correlation and route context."""

import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from subscription_sync.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Upstream ids are reused only when they look like an id, never as free text
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")

# Path prefix -> route name bound to the logging context
ROUTE_NAMES = {
    "/api/checkout": "checkout",
    "/api/payments/webhook": "payment_webhook",
    "/api/cancel/request": "cancel_request",
    "/api/cancel": "cancel_complete",
    "/api/operator": "operator",
    "/api/cron": "cron",
}


def route_name(path: str) -> Optional[str]:
    for prefix, name in ROUTE_NAMES.items():
        if path == prefix or path.startswith(prefix + "/"):
            return name
    return None


def request_id_for(request: Request) -> str:
    """Reuse a well-formed upstream X-Request-ID, otherwise generate one."""
    incoming = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request once on arrival and once on completion.

    The request id is bound to the logging context for everything logged
    while handling the request and echoed back in the X-Request-ID header.
    Query strings are never logged: they carry cancel tokens and the cron
    secret.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """
        Args:
            app: ASGI application
            include_request_details: Also log client address and user agent
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request_id_for(request)
        bind_context(request_id=request_id)

        details = {}
        if self.include_request_details:
            details = {
                "client_host": request.client.host if request.client else "unknown",
                "user_agent": request.headers.get("user-agent"),
            }
        logger.info("request_started", method=request.method, path=request.url.path, **details)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            # 401s on operator and cron routes are worth noticing
            log = logger.warning if response.status_code >= 400 else logger.info
            log(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the route name and, for cancel links, a token prefix."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        name = route_name(request.url.path)
        if name:
            bind_context(route=name)

        token = request.query_params.get("token")
        if token:
            bind_context(token=f"{token[:12]}...")

        return await call_next(request)
