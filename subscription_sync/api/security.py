"""Shared-secret checks for operator and cron endpoints."""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Query, Request

from subscription_sync.config import Settings, get_config
from subscription_sync.logging_config import get_logger

logger = get_logger(__name__)

UNAUTHORIZED = {"error": "unauthorized", "message": "Missing or invalid credentials"}


def get_settings() -> Settings:
    """Runtime settings dependency."""
    return get_config().settings


def bearer_token(request: Request) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header, if present."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Operator endpoints require the admin cancel secret as bearer token."""
    if not secret_matches(bearer_token(request), settings.admin_cancel_secret):
        logger.warning("operator_auth_failed", path=request.url.path)
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)


def require_cron(
    request: Request,
    secret: Optional[str] = Query(None, description="Cron secret (alternative to bearer header)"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Cron endpoints accept the cron secret as bearer token or ``?secret=``."""
    provided = bearer_token(request) or secret
    if not secret_matches(provided, settings.cron_secret):
        logger.warning("cron_auth_failed", path=request.url.path, secret_configured=bool(settings.cron_secret))
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
