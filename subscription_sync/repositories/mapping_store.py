"""Mapping store - durable per-customer state, the deactivation queue and audit entries.

Two backends share one interface:
- RedisMappingStore: production backend (redis-py, hashes + one set)
- InMemoryMappingStore: thread-safe dictionary storage for local runs and tests

Key layout:
    mapping:email:<email>        hash, one MappingRecord per customer email
    mapping:customer:<id>        hash, last_email / last_subscription_id / updated_at
    deactivation:pending         set of emails awaiting access revocation
    cancel:used:<token tail>     single-use marker for cancel links (TTL)
    audit:cancel:<email>         hash, last cancellation event
"""

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlparse

import redis

from subscription_sync.errors import StoreError
from subscription_sync.logging_config import get_logger
from subscription_sync.models import AuditEntry, MappingRecord
from subscription_sync.models.mapping import utcnow

logger = get_logger(__name__)

PENDING_KEY = "deactivation:pending"
TOKEN_TAIL_LENGTH = 24


def email_key(email: str) -> str:
    return f"mapping:email:{email}"


def customer_key(customer_id: str) -> str:
    return f"mapping:customer:{customer_id}"


def used_marker_key(token: str) -> str:
    return f"cancel:used:{token[-TOKEN_TAIL_LENGTH:]}"


def audit_key(email: str) -> str:
    return f"audit:cancel:{email}"


class MappingStore(ABC):
    """Operations the lifecycle services need from durable storage.

    Every method raises StoreError when the backend is unreachable.
    Records are never deleted.
    """

    @abstractmethod
    def get_record(self, email: str) -> Optional[MappingRecord]:
        """Load the record for an email (None when the key does not exist)."""

    @abstractmethod
    def update_fields(self, email: str, fields: Dict[str, str]) -> None:
        """Merge raw string fields into the record hash (creates it if missing)."""

    @abstractmethod
    def get_customer_index(self, customer_id: str) -> Dict[str, str]:
        """Load the secondary index entry for a provider customer."""

    @abstractmethod
    def set_customer_index(self, customer_id: str, email: str, subscription_id: Optional[str] = None) -> None:
        """Point a provider customer at its last known email and subscription."""

    @abstractmethod
    def add_pending(self, email: str) -> None:
        """Add an email to the deactivation queue."""

    @abstractmethod
    def remove_pending(self, email: str) -> None:
        """Remove an email from the deactivation queue."""

    @abstractmethod
    def pending_emails(self) -> List[str]:
        """List the emails currently in the deactivation queue."""

    @abstractmethod
    def claim_token_marker(self, token: str, ttl_seconds: int) -> bool:
        """Set the single-use marker for a cancel token.

        Returns:
            True if the marker was newly set, False if it already existed
        """

    @abstractmethod
    def write_audit(self, entry: AuditEntry) -> None:
        """Store the cancellation audit entry for an email (last event wins)."""

    @abstractmethod
    def ping(self) -> bool:
        """Check backend connectivity."""

    def save_record(self, record: MappingRecord, fields: Optional[List[str]] = None) -> None:
        """Merge a record (or a subset of its fields) into storage.

        An empty subscription_id is never written, so a stored one survives.
        """
        self.update_fields(record.email, record.to_hash(fields))

    def save_canceled(self, record: MappingRecord) -> None:
        """Persist a canceled record and queue it for deactivation."""
        self.save_record(record)
        self.add_pending(record.email)

    def save_deactivated(self, record: MappingRecord) -> None:
        """Persist a deactivated record and take it off the queue."""
        self.save_record(
            record, fields=["status", "deactivation_pending", "deactivated_at", "updated_at"]
        )
        self.remove_pending(record.email)


class RedisMappingStore(MappingStore):
    """Mapping store backed by Redis hashes and a set."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        password: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> "RedisMappingStore":
        """Create a store from a redis:// or rediss:// URL.

        REDIS_PASSWORD is applied only when the URL carries no password.
        """
        kwargs = {
            "decode_responses": True,
            "socket_connect_timeout": timeout_seconds,
            "socket_timeout": timeout_seconds,
            "health_check_interval": 30,
        }
        if password and not urlparse(redis_url).password:
            kwargs["password"] = password
        return cls(redis.from_url(redis_url, **kwargs))

    @contextmanager
    def _op(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            logger.error("store_operation_failed", operation=operation, key=key, error=str(e))
            raise StoreError(f"Redis {operation} failed for {key}: {e}") from e

    def get_record(self, email: str) -> Optional[MappingRecord]:
        key = email_key(email)
        with self._op("hgetall", key):
            data = self._client.hgetall(key)
        if not data:
            return None
        return MappingRecord.from_hash(email, data)

    def update_fields(self, email: str, fields: Dict[str, str]) -> None:
        if not fields:
            return
        key = email_key(email)
        with self._op("hset", key):
            self._client.hset(key, mapping=fields)

    def get_customer_index(self, customer_id: str) -> Dict[str, str]:
        key = customer_key(customer_id)
        with self._op("hgetall", key):
            return self._client.hgetall(key) or {}

    def set_customer_index(self, customer_id: str, email: str, subscription_id: Optional[str] = None) -> None:
        key = customer_key(customer_id)
        fields = {"last_email": email, "updated_at": utcnow().isoformat()}
        if subscription_id:
            fields["last_subscription_id"] = subscription_id
        with self._op("hset", key):
            self._client.hset(key, mapping=fields)

    def add_pending(self, email: str) -> None:
        with self._op("sadd", PENDING_KEY):
            self._client.sadd(PENDING_KEY, email)

    def remove_pending(self, email: str) -> None:
        with self._op("srem", PENDING_KEY):
            self._client.srem(PENDING_KEY, email)

    def pending_emails(self) -> List[str]:
        with self._op("smembers", PENDING_KEY):
            members = self._client.smembers(PENDING_KEY) or set()
        return sorted(members)

    def claim_token_marker(self, token: str, ttl_seconds: int) -> bool:
        key = used_marker_key(token)
        with self._op("set", key):
            return bool(self._client.set(key, "1", nx=True, ex=ttl_seconds))

    def write_audit(self, entry: AuditEntry) -> None:
        key = audit_key(entry.email)
        with self._op("hset", key):
            self._client.hset(key, mapping=entry.to_hash())

    def save_canceled(self, record: MappingRecord) -> None:
        """Write the record and queue membership in one MULTI/EXEC."""
        key = email_key(record.email)
        with self._op("multi", key):
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(key, mapping=record.to_hash())
            pipe.sadd(PENDING_KEY, record.email)
            pipe.execute()

    def save_deactivated(self, record: MappingRecord) -> None:
        key = email_key(record.email)
        fields = record.to_hash(["status", "deactivation_pending", "deactivated_at", "updated_at"])
        with self._op("multi", key):
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(key, mapping=fields)
            pipe.srem(PENDING_KEY, record.email)
            pipe.execute()

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning("store_ping_failed", error=str(e))
            return False

    def close(self) -> None:
        self._client.close()


class InMemoryMappingStore(MappingStore):
    """Thread-safe in-memory mapping store."""

    def __init__(self):
        self._records: Dict[str, Dict[str, str]] = {}
        self._customers: Dict[str, Dict[str, str]] = {}
        self._pending: Set[str] = set()
        self._markers: Dict[str, float] = {}
        self._audit: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def get_record(self, email: str) -> Optional[MappingRecord]:
        with self._lock:
            data = self._records.get(email)
            if not data:
                return None
            return MappingRecord.from_hash(email, dict(data))

    def get_raw(self, email: str) -> Dict[str, str]:
        """Stored hash for an email, as Redis would return it."""
        with self._lock:
            return dict(self._records.get(email, {}))

    def update_fields(self, email: str, fields: Dict[str, str]) -> None:
        if not fields:
            return
        with self._lock:
            self._records.setdefault(email, {}).update(fields)

    def get_customer_index(self, customer_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._customers.get(customer_id, {}))

    def set_customer_index(self, customer_id: str, email: str, subscription_id: Optional[str] = None) -> None:
        fields = {"last_email": email, "updated_at": utcnow().isoformat()}
        if subscription_id:
            fields["last_subscription_id"] = subscription_id
        with self._lock:
            self._customers.setdefault(customer_id, {}).update(fields)

    def add_pending(self, email: str) -> None:
        with self._lock:
            self._pending.add(email)

    def remove_pending(self, email: str) -> None:
        with self._lock:
            self._pending.discard(email)

    def pending_emails(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def claim_token_marker(self, token: str, ttl_seconds: int) -> bool:
        key = used_marker_key(token)
        now = time.monotonic()
        with self._lock:
            expires_at = self._markers.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._markers[key] = now + ttl_seconds
            return True

    def write_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit[entry.email] = entry.to_hash()

    def get_audit(self, email: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._audit.get(email, {}))

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        """Clear all data (for testing)."""
        with self._lock:
            self._records.clear()
            self._customers.clear()
            self._pending.clear()
            self._markers.clear()
            self._audit.clear()

    def get_stats(self) -> Tuple[int, int]:
        """Return (record count, pending count)."""
        with self._lock:
            return len(self._records), len(self._pending)


# Global store instance
_store_instance: Optional[MappingStore] = None


def create_mapping_store(backend: str, redis_url: str, password: Optional[str] = None,
                         timeout_seconds: float = 5.0) -> MappingStore:
    """Build a store for the configured backend ('redis' or 'memory')."""
    if backend == "memory":
        return InMemoryMappingStore()
    if backend == "redis":
        return RedisMappingStore.from_url(redis_url, password=password, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown store backend: {backend}")


def get_mapping_store() -> MappingStore:
    """Get global mapping store instance (singleton), built from configuration."""
    global _store_instance
    if _store_instance is None:
        from subscription_sync.config import get_config

        settings = get_config().settings
        _store_instance = create_mapping_store(
            settings.store_backend,
            settings.redis_url,
            password=settings.redis_password,
            timeout_seconds=settings.redis_timeout_seconds,
        )
        logger.info("mapping_store_created", backend=settings.store_backend)
    return _store_instance


def set_mapping_store(store: MappingStore) -> None:
    """Install a specific store as the global instance."""
    global _store_instance
    _store_instance = store


def reset_mapping_store() -> None:
    """Drop the global store (for testing)."""
    global _store_instance
    _store_instance = None
