"""Transactional email delivery.

Sends HTML mail through an HTTP mail API (Resend-compatible: bearer key,
JSON body {from, to, subject, html}). Without an API key the message is only
logged, which is how local and test runs behave.
"""

from typing import Optional

import httpx

from subscription_sync.logging_config import get_logger

logger = get_logger(__name__)

CANCEL_LINK_SUBJECT = "Confirm your cancellation"

CANCEL_LINK_TEMPLATE = """\
<div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif">
  <h2 style="margin:0 0 8px;">Confirm your cancellation</h2>
  <p>Click the button to stop your subscription. This link expires in {ttl_minutes} minutes.</p>
  <p><a href="{link}" style="display:inline-block;padding:10px 14px;border-radius:10px;text-decoration:none;">Cancel subscription</a></p>
  <p style="font-size:12px;margin-top:10px;">Button not working? Copy this link:<br>{link}</p>
</div>
"""


class Mailer:
    """Mail API client."""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    def close(self) -> None:
        self._client.close()

    def send(self, to: str, subject: str, html: str) -> bool:
        """Send one message.

        Returns:
            True if the mail API accepted the message (or it was logged in dev mode)
        """
        if not self._api_key:
            logger.info("mail_dev_mode", to=to, subject=subject)
            return True

        try:
            response = self._client.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"from": self._sender, "to": to, "subject": subject, "html": html},
            )
        except httpx.HTTPError as e:
            logger.error("mail_send_error", to=to, error=f"{type(e).__name__}: {e}")
            return False

        if not response.is_success:
            logger.error("mail_send_failed", to=to, status_code=response.status_code, body=response.text[:160])
            return False

        logger.info("mail_sent", to=to, status_code=response.status_code)
        return True

    def send_cancel_link(self, to: str, link: str, ttl_minutes: int) -> bool:
        html = CANCEL_LINK_TEMPLATE.format(link=link, ttl_minutes=ttl_minutes)
        return self.send(to, CANCEL_LINK_SUBJECT, html)


# Global mailer instance
_mailer_instance: Optional[Mailer] = None


def get_mailer() -> Mailer:
    """Get global mailer instance (singleton)."""
    global _mailer_instance
    if _mailer_instance is None:
        from subscription_sync.config import get_config

        settings = get_config().settings
        _mailer_instance = Mailer(
            api_key=settings.mail_api_key,
            sender=settings.mail_from,
            api_url=settings.mail_api_url,
        )
    return _mailer_instance


def reset_mailer() -> None:
    """Close and drop the global mailer (for testing)."""
    global _mailer_instance
    if _mailer_instance is not None:
        _mailer_instance.close()
        _mailer_instance = None
