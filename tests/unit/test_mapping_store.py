"""Tests for the mapping store backends."""

import threading
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import redis

from subscription_sync.errors import StoreError
from subscription_sync.models import AuditEntry, AuditSource, MappingRecord, SubscriptionStatus
from subscription_sync.repositories.mapping_store import (
    PENDING_KEY,
    InMemoryMappingStore,
    RedisMappingStore,
    audit_key,
    create_mapping_store,
    customer_key,
    email_key,
    get_mapping_store,
    set_mapping_store,
    used_marker_key,
)

NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def canceled_record():
    record = MappingRecord(email="jane@example.com", customer_id="cst_1")
    record.attach_subscription("sub_1", now=NOW)
    record.mark_canceled(date(2025, 3, 10), [], 200, now=NOW)
    return record


class TestKeys:
    """Test the key layout."""

    def test_key_helpers(self):
        assert email_key("jane@example.com") == "mapping:email:jane@example.com"
        assert customer_key("cst_1") == "mapping:customer:cst_1"
        assert audit_key("jane@example.com") == "audit:cancel:jane@example.com"
        assert PENDING_KEY == "deactivation:pending"

    def test_marker_uses_token_tail(self):
        token = "a" * 40 + "b" * 24
        assert used_marker_key(token) == "cancel:used:" + "b" * 24


class TestInMemoryStore:
    """Test the in-memory backend."""

    def test_missing_record(self, store):
        assert store.get_record("nobody@example.com") is None

    def test_save_and_load(self, store, canceled_record):
        store.save_record(canceled_record)
        loaded = store.get_record("jane@example.com")
        assert loaded.status == SubscriptionStatus.CANCELED
        assert loaded.subscription_id == "sub_1"

    def test_update_merges_fields(self, store):
        store.update_fields("jane@example.com", {"customer_id": "cst_1"})
        store.update_fields("jane@example.com", {"offer_id": "OFFER1"})
        raw = store.get_raw("jane@example.com")
        assert raw == {"customer_id": "cst_1", "offer_id": "OFFER1"}

    def test_subscription_id_survives_record_without_one(self, store):
        store.update_fields("jane@example.com", {"subscription_id": "sub_1"})
        store.save_record(MappingRecord(email="jane@example.com", customer_id="cst_2"))
        assert store.get_record("jane@example.com").subscription_id == "sub_1"

    def test_save_canceled_queues(self, store, canceled_record):
        store.save_canceled(canceled_record)
        assert store.pending_emails() == ["jane@example.com"]

    def test_save_deactivated_dequeues(self, store, canceled_record):
        store.save_canceled(canceled_record)
        canceled_record.mark_deactivated(now=NOW)
        store.save_deactivated(canceled_record)
        assert store.pending_emails() == []
        loaded = store.get_record("jane@example.com")
        assert loaded.status == SubscriptionStatus.DEACTIVATED
        assert loaded.cancel_at_date == date(2025, 3, 10)

    def test_pending_sorted_and_idempotent(self, store):
        store.add_pending("b@example.com")
        store.add_pending("a@example.com")
        store.add_pending("a@example.com")
        assert store.pending_emails() == ["a@example.com", "b@example.com"]
        store.remove_pending("a@example.com")
        store.remove_pending("missing@example.com")
        assert store.pending_emails() == ["b@example.com"]

    def test_customer_index(self, store):
        store.set_customer_index("cst_1", "jane@example.com", "sub_1")
        store.set_customer_index("cst_1", "jane@example.com")
        index = store.get_customer_index("cst_1")
        assert index["last_email"] == "jane@example.com"
        assert index["last_subscription_id"] == "sub_1"
        assert "updated_at" in index

    def test_token_marker_single_use(self, store):
        assert store.claim_token_marker("token-123", ttl_seconds=60)
        assert not store.claim_token_marker("token-123", ttl_seconds=60)

    def test_token_marker_expires(self, store):
        with patch("subscription_sync.repositories.mapping_store.time.monotonic", return_value=1000.0):
            assert store.claim_token_marker("token-123", ttl_seconds=10)
        with patch("subscription_sync.repositories.mapping_store.time.monotonic", return_value=1011.0):
            assert store.claim_token_marker("token-123", ttl_seconds=10)

    def test_concurrent_marker_claims_single_winner(self, store):
        results = []

        def claim():
            results.append(store.claim_token_marker("shared-token", ttl_seconds=60))

        threads = [threading.Thread(target=claim) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1

    def test_audit_last_event_wins(self, store):
        store.write_audit(AuditEntry(email="jane@example.com", source=AuditSource.EMAIL_LINK, ts=NOW))
        store.write_audit(AuditEntry(email="jane@example.com", source=AuditSource.OPERATOR_CS, ts=NOW))
        assert store.get_audit("jane@example.com")["source"] == "operator_cs"

    def test_clear_and_stats(self, store, canceled_record):
        store.save_canceled(canceled_record)
        assert store.get_stats() == (1, 1)
        store.clear()
        assert store.get_stats() == (0, 0)


class TestRedisStore:
    """Test the Redis backend against a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock(spec=redis.Redis)

    @pytest.fixture
    def redis_store(self, client):
        return RedisMappingStore(client)

    def test_get_record_reads_hash(self, redis_store, client):
        client.hgetall.return_value = {"customer_id": "cst_1", "status": "active", "subscription_id": "sub_1"}
        record = redis_store.get_record("jane@example.com")
        client.hgetall.assert_called_once_with("mapping:email:jane@example.com")
        assert record.status == SubscriptionStatus.ACTIVE

    def test_get_record_missing(self, redis_store, client):
        client.hgetall.return_value = {}
        assert redis_store.get_record("jane@example.com") is None

    def test_update_fields_uses_hset_mapping(self, redis_store, client):
        redis_store.update_fields("jane@example.com", {"offer_id": "OFFER1"})
        client.hset.assert_called_once_with("mapping:email:jane@example.com", mapping={"offer_id": "OFFER1"})

    def test_update_with_no_fields_is_noop(self, redis_store, client):
        redis_store.update_fields("jane@example.com", {})
        client.hset.assert_not_called()

    def test_claim_marker_set_nx_ex(self, redis_store, client):
        client.set.return_value = True
        assert redis_store.claim_token_marker("x" * 40, 604800)
        client.set.assert_called_once_with("cancel:used:" + "x" * 24, "1", nx=True, ex=604800)

    def test_claim_marker_existing(self, redis_store, client):
        client.set.return_value = None
        assert not redis_store.claim_token_marker("token", 60)

    def test_pending_emails_sorted(self, redis_store, client):
        client.smembers.return_value = {"b@example.com", "a@example.com"}
        assert redis_store.pending_emails() == ["a@example.com", "b@example.com"]

    def test_save_canceled_is_one_transaction(self, redis_store, client, canceled_record):
        pipe = MagicMock()
        client.pipeline.return_value = pipe
        redis_store.save_canceled(canceled_record)
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.hset.assert_called_once()
        pipe.sadd.assert_called_once_with(PENDING_KEY, "jane@example.com")
        pipe.execute.assert_called_once()

    def test_save_deactivated_writes_subset(self, redis_store, client, canceled_record):
        pipe = MagicMock()
        client.pipeline.return_value = pipe
        canceled_record.mark_deactivated(now=NOW)
        redis_store.save_deactivated(canceled_record)
        fields = pipe.hset.call_args.kwargs["mapping"]
        assert set(fields) == {"status", "deactivation_pending", "deactivated_at", "updated_at"}
        pipe.srem.assert_called_once_with(PENDING_KEY, "jane@example.com")

    def test_redis_errors_become_store_errors(self, redis_store, client):
        client.hgetall.side_effect = redis.ConnectionError("connection refused")
        with pytest.raises(StoreError) as exc_info:
            redis_store.get_record("jane@example.com")
        assert exc_info.value.retryable

    def test_ping(self, redis_store, client):
        client.ping.return_value = True
        assert redis_store.ping()
        client.ping.side_effect = redis.TimeoutError("timeout")
        assert not redis_store.ping()

    def test_from_url_applies_password_only_without_url_password(self):
        with patch("subscription_sync.repositories.mapping_store.redis.from_url") as from_url:
            RedisMappingStore.from_url("redis://localhost:6379/0", password="pw", timeout_seconds=2.0)
            kwargs = from_url.call_args.kwargs
            assert kwargs["password"] == "pw"
            assert kwargs["decode_responses"] is True
            assert kwargs["socket_timeout"] == 2.0

            RedisMappingStore.from_url("redis://:inurl@localhost:6379/0", password="pw")
            assert "password" not in from_url.call_args.kwargs


class TestFactory:
    """Test backend selection and the global instance."""

    def test_memory_backend(self):
        assert isinstance(create_mapping_store("memory", "redis://unused"), InMemoryMappingStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_mapping_store("sqlite", "redis://unused")

    def test_set_mapping_store(self, store):
        set_mapping_store(store)
        assert get_mapping_store() is store
