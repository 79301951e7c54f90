"""Operational alert publishing to Google Cloud Pub/Sub.

Responsibilities:
- Log every alert (always)
- Publish alerts as JSON messages to a Pub/Sub topic (when enabled)
- Manage Pub/Sub client lifecycle

Publishing never raises: an alert that cannot be delivered is logged.
"""

from datetime import datetime
from threading import RLock
from typing import Any, Optional

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import pubsub_v1
from pydantic import BaseModel, Field

from subscription_sync.logging_config import get_logger
from subscription_sync.models import AlertsConfig
from subscription_sync.models.mapping import utcnow

logger = get_logger(__name__)

ALERT_LEVELS = ("info", "warn", "error")


class Alert(BaseModel):
    """Alert message published to Pub/Sub."""

    level: str = Field(..., description="info, warn or error")
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=utcnow)
    app: str = "subscription-sync"


class AlertDispatcher:
    """Dispatches operational alerts to a Pub/Sub topic.

    Thread-safe; one publisher per process.
    """

    def __init__(self, config: Optional[AlertsConfig] = None):
        self._lock = RLock()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._config = config or AlertsConfig()
        self._enabled = False

        self._initialize()

    def _initialize(self) -> None:
        self._enabled = self._config.enabled
        if not self._enabled:
            logger.info("alert_dispatcher_disabled", message="Alerts are only logged")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(self._config.project_id, self._config.topic)
            self._ensure_topic_exists()
            logger.info(
                "alert_dispatcher_initialized",
                project_id=self._config.project_id,
                topic=self._config.topic,
                topic_path=self._topic_path,
            )
        except GoogleAPIError as e:
            logger.error(
                "alert_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            # Fall back to log-only alerts
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Create the alert topic if it does not exist."""
        if not self._publisher:
            return
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
        except NotFound:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic=self._config.topic, topic_path=topic.name)

    def is_enabled(self) -> bool:
        """True if alerts are published to Pub/Sub."""
        return self._enabled and self._publisher is not None

    def alert(self, level: str, message: str, **context: Any) -> bool:
        """Log an alert and publish it when enabled.

        Args:
            level: info, warn or error (unknown levels are treated as error)
            message: Short human-readable message
            **context: Identifiers (email, customer_id, payment_id, ...)

        Returns:
            True if the alert was published to Pub/Sub
        """
        if level not in ALERT_LEVELS:
            level = "error"

        log_method = {"info": logger.info, "warn": logger.warning, "error": logger.error}[level]
        log_method("alert_raised", level=level, alert_message=message, **context)

        if not self.is_enabled():
            return False

        alert = Alert(level=level, message=message, context={k: _jsonable(v) for k, v in context.items()})
        with self._lock:
            try:
                future = self._publisher.publish(
                    self._topic_path,
                    alert.model_dump_json().encode("utf-8"),
                    level=level,
                )
                message_id = future.result(timeout=5.0)
                logger.debug("pubsub_message_published", message_id=message_id)
                return True
            except Exception as e:
                # Alert delivery is best effort
                logger.error(
                    "alert_publish_failed",
                    level=level,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return False

    def info(self, message: str, **context: Any) -> bool:
        return self.alert("info", message, **context)

    def warn(self, message: str, **context: Any) -> bool:
        return self.alert("warn", message, **context)

    def error(self, message: str, **context: Any) -> bool:
        return self.alert("error", message, **context)

    def shutdown(self) -> None:
        """Shutdown the dispatcher and drop the publisher."""
        with self._lock:
            if self._publisher:
                logger.info("alert_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    return str(value)


_alert_dispatcher: Optional[AlertDispatcher] = None
_dispatcher_lock = RLock()


def get_alert_dispatcher() -> AlertDispatcher:
    """Get or create the singleton AlertDispatcher instance."""
    global _alert_dispatcher
    if _alert_dispatcher is None:
        with _dispatcher_lock:
            if _alert_dispatcher is None:
                from subscription_sync.config import get_config

                _alert_dispatcher = AlertDispatcher(get_config().offers.alerts)
    return _alert_dispatcher


def reset_alert_dispatcher() -> None:
    """Reset the singleton AlertDispatcher instance (for testing)."""
    global _alert_dispatcher

    with _dispatcher_lock:
        if _alert_dispatcher is not None:
            _alert_dispatcher.shutdown()
            _alert_dispatcher = None
