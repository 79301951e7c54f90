"""Course platform access activator.

Grants and revokes access by POSTing {name, email, external_user_id} to the
activation or deactivation URL configured on the course platform. The
platform treats both calls as idempotent.
"""

from typing import Optional

import httpx
from pydantic import BaseModel

from subscription_sync.errors import ActivatorError
from subscription_sync.logging_config import get_logger

logger = get_logger(__name__)


class ActivationResult(BaseModel):
    """Outcome of one activation or deactivation call."""

    ok: bool
    skipped: bool = False
    status_code: Optional[int] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    def raise_for_failure(self) -> None:
        """Raise ActivatorError unless the call succeeded."""
        if not self.ok:
            raise ActivatorError(
                f"Access platform call failed: reason={self.reason} status={self.status_code} {self.detail or ''}".strip()
            )


class AccessActivator:
    """Calls the course platform's activation/deactivation webhooks."""

    def __init__(self, timeout_seconds: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    def close(self) -> None:
        self._client.close()

    def activate(
        self, url: Optional[str], name: Optional[str], email: str, external_user_id: Optional[str]
    ) -> ActivationResult:
        """Grant access for a customer."""
        return self._call("activation", url, name, email, external_user_id)

    def deactivate(
        self, url: Optional[str], name: Optional[str], email: str, external_user_id: Optional[str]
    ) -> ActivationResult:
        """Revoke access for a customer."""
        return self._call("deactivation", url, name, email, external_user_id)

    def _call(
        self,
        kind: str,
        url: Optional[str],
        name: Optional[str],
        email: str,
        external_user_id: Optional[str],
    ) -> ActivationResult:
        if not url or not email or not external_user_id:
            logger.warning(
                f"access_{kind}_skipped",
                email=email,
                has_url=bool(url),
                has_external_user_id=bool(external_user_id),
            )
            return ActivationResult(ok=False, skipped=True, reason="missing_fields")

        body = {"name": name or email, "email": email, "external_user_id": external_user_id}
        try:
            response = self._client.post(url, json=body)
        except httpx.HTTPError as e:
            logger.error(f"access_{kind}_error", email=email, error=f"{type(e).__name__}: {e}")
            return ActivationResult(ok=False, reason="network_error", detail=str(e))

        if not response.is_success:
            logger.error(
                f"access_{kind}_failed",
                email=email,
                status_code=response.status_code,
                body=response.text[:300],
            )
            return ActivationResult(
                ok=False,
                status_code=response.status_code,
                reason="http_error",
                detail=response.text[:300],
            )

        logger.info(f"access_{kind}_succeeded", email=email, external_user_id=external_user_id)
        return ActivationResult(ok=True, status_code=response.status_code)


# Global activator instance
_activator_instance: Optional[AccessActivator] = None


def get_access_activator() -> AccessActivator:
    """Get global access activator instance (singleton)."""
    global _activator_instance
    if _activator_instance is None:
        from subscription_sync.config import get_config

        _activator_instance = AccessActivator(timeout_seconds=get_config().offers.activator.timeout_seconds)
    return _activator_instance


def reset_access_activator() -> None:
    """Close and drop the global activator (for testing)."""
    global _activator_instance
    if _activator_instance is not None:
        _activator_instance.close()
        _activator_instance = None
