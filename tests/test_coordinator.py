"""Tests for push reconciliation and pull."""

from __future__ import annotations

import threading

import pytest

from tests.conftest import ts
from vaultsync.coordinator import (
    Conflict,
    PullHandler,
    PullRequired,
    SyncCoordinator,
    Updated,
    UpToDate,
    VaultSnapshot,
)
from vaultsync.errors import LockTimeout, ServerError, StoreError, ValidationError
from vaultsync.policy import MAX_VERSION, VersionCounterPolicy
from vaultsync.schemas import SyncRequest
from vaultsync.store import VaultStore


class TestVersionScenario:
    def test_full_exchange(self, version_coordinator, version_puller, store):
        assert version_coordinator.push("user-1", "laptop", b"B1", 1) == Updated(1)

        assert version_coordinator.push("user-1", "phone", b"B2", 1) == Conflict(1)
        assert store.read("user-1").encrypted_blob == b"B1"

        assert version_coordinator.push("user-1", "phone", b"B2", 2) == Updated(2)
        assert version_puller.pull("user-1") == VaultSnapshot(b"B2", 2)

    def test_lower_version_is_rejected_with_server_version(self, version_coordinator):
        version_coordinator.push("user-1", "laptop", b"B1", 5)
        outcome = version_coordinator.push("user-1", "phone", b"B2", 3)
        assert outcome == Conflict(5)
        assert outcome.status_code == 409
        assert outcome.to_response() == {"code": "CONFLICT", "serverVersion": 5}

    def test_records_last_writer(self, version_coordinator, store):
        version_coordinator.push("user-1", "laptop", b"B1", 1)
        version_coordinator.push("user-1", "phone", b"B2", 2)
        assert store.read("user-1").last_writer_device_id == "phone"

    def test_accepted_versions_strictly_increase(self, version_coordinator, store):
        accepted = []
        for version in [1, 3, 2, 3, 7, 4, 8]:
            outcome = version_coordinator.push("user-1", "laptop", b"x%d" % version, version)
            if isinstance(outcome, Updated):
                accepted.append(outcome.new_clock)
        assert accepted == [1, 3, 7, 8]
        assert store.read("user-1").version == 8

    def test_users_are_independent(self, version_coordinator, version_puller):
        version_coordinator.push("alice", "laptop", b"A", 4)
        assert version_coordinator.push("bob", "laptop", b"B", 1) == Updated(1)
        assert version_puller.pull("alice") == VaultSnapshot(b"A", 4)


class TestTimestampScenario:
    def test_full_exchange(self, timestamp_coordinator, timestamp_puller, store):
        assert timestamp_coordinator.push("user-1", "laptop", b"B1", ts(100)) == Updated(ts(100))

        outcome = timestamp_coordinator.push("user-1", "phone", b"B2", ts(50))
        assert outcome == PullRequired(b"B1", ts(100))
        assert store.read("user-1").encrypted_blob == b"B1"
        assert store.read("user-1").updated_at == ts(100)

        assert timestamp_coordinator.push("user-1", "phone", b"B3", ts(150)) == Updated(ts(150))
        assert timestamp_coordinator.push("user-1", "phone", b"B3", ts(150)) == UpToDate(ts(150))
        assert timestamp_puller.pull("user-1") == VaultSnapshot(b"B3", ts(150))

    def test_responses(self, timestamp_coordinator):
        updated = timestamp_coordinator.push("user-1", "laptop", b"B1", "1970-01-01T00:01:40Z")
        assert updated.to_response() == {
            "success": True,
            "action": "updated",
            "lastModified": "1970-01-01T00:01:40Z",
        }
        stale = timestamp_coordinator.push("user-1", "phone", b"B2", ts(50))
        assert stale.to_response() == {
            "success": True,
            "action": "pull_required",
            "encrypted_blob": "QjE=",
            "lastModified": "1970-01-01T00:01:40Z",
        }
        same = timestamp_coordinator.push("user-1", "phone", b"B2", ts(100))
        assert same.to_response() == {
            "success": True,
            "action": "up_to_date",
            "lastModified": "1970-01-01T00:01:40Z",
        }

    def test_equal_timestamp_never_accepted_twice(self, timestamp_coordinator, store):
        timestamp_coordinator.push("user-1", "laptop", b"B1", ts(100))
        outcome = timestamp_coordinator.push("user-1", "phone", b"other", ts(100))
        assert isinstance(outcome, UpToDate)
        assert store.read("user-1").encrypted_blob == b"B1"
        assert store.read("user-1").version == 1


class TestValidation:
    @pytest.mark.parametrize("blob,clock", [(None, 1), (b"B", None), (None, None)])
    def test_missing_fields(self, version_coordinator, blob, clock):
        with pytest.raises(ValidationError, match="Missing fields"):
            version_coordinator.push("user-1", "laptop", blob, clock)

    def test_blob_size_limit(self, version_coordinator, store):
        with pytest.raises(ValidationError):
            version_coordinator.push("user-1", "laptop", b"x" * 1025, 1)
        assert store.read("user-1") is None
        assert version_coordinator.push("user-1", "laptop", b"x" * 1024, 1) == Updated(1)

    def test_version_beyond_column_range(self, version_coordinator, store):
        with pytest.raises(ValidationError):
            version_coordinator.push("user-1", "laptop", b"B", 2**63)
        assert store.read("user-1") is None

    def test_largest_version_is_stored(self, version_coordinator, version_puller):
        assert version_coordinator.push("user-1", "laptop", b"B", MAX_VERSION) == Updated(MAX_VERSION)
        assert version_puller.pull("user-1") == VaultSnapshot(b"B", MAX_VERSION)

    def test_blob_must_be_bytes(self, version_coordinator):
        with pytest.raises(ValidationError):
            version_coordinator.push("user-1", "laptop", "not bytes", 1)

    def test_no_transaction_opened_on_invalid_input(self, version_coordinator, monkeypatch):
        def fail(user_id):
            raise AssertionError("transaction opened")

        monkeypatch.setattr(version_coordinator.store, "transaction", fail)
        with pytest.raises(ValidationError):
            version_coordinator.push("user-1", "laptop", b"B", "1")


class TestFailures:
    def test_unexpected_error_rolls_back(self, version_coordinator, store, monkeypatch):
        version_coordinator.push("user-1", "laptop", b"B1", 1)
        original_upsert = store.upsert

        def upsert_then_fail(session, record):
            original_upsert(session, record)
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "upsert", upsert_then_fail)
        with pytest.raises(ServerError) as excinfo:
            version_coordinator.push("user-1", "phone", b"B2", 2)
        assert not isinstance(excinfo.value, StoreError)

        record = store.read("user-1")
        assert record.encrypted_blob == b"B1"
        assert record.version == 1

    def test_store_error_propagates_unchanged(self, version_coordinator, store, monkeypatch):
        def broken(session, user_id):
            raise StoreError("connection lost")

        monkeypatch.setattr(store, "read_for_update", broken)
        with pytest.raises(StoreError, match="connection lost"):
            version_coordinator.push("user-1", "laptop", b"B1", 1)

    def test_lock_timeout(self, database_url):
        store = VaultStore.from_url(database_url, lock_timeout=0.1).open()
        coordinator = SyncCoordinator(store, VersionCounterPolicy())
        errors = []

        def blocked_push():
            try:
                coordinator.push("user-1", "phone", b"B2", 2)
            except LockTimeout as exc:
                errors.append(exc)

        try:
            with store.transaction("user-1"):
                worker = threading.Thread(target=blocked_push)
                worker.start()
                worker.join()
            assert len(errors) == 1
            assert store.read("user-1") is None
        finally:
            store.close()


class TestConcurrency:
    def test_exactly_one_winner_for_same_stale_version(self, version_coordinator, store):
        version_coordinator.push("user-1", "laptop", b"B0", 1)
        barrier = threading.Barrier(2)
        outcomes = {}

        def push(device):
            barrier.wait()
            outcomes[device] = version_coordinator.push("user-1", device, device.encode(), 2)

        workers = [threading.Thread(target=push, args=(d,)) for d in ("phone", "tablet")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        results = sorted(type(o).__name__ for o in outcomes.values())
        assert results == ["Conflict", "Updated"]
        winner = next(d for d, o in outcomes.items() if isinstance(o, Updated))
        assert store.read("user-1").encrypted_blob == winner.encode()

    def test_exactly_one_winner_on_first_push(self, timestamp_coordinator, store):
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def push(device):
            barrier.wait()
            outcome = timestamp_coordinator.push("user-1", device, device.encode(), ts(100))
            with lock:
                outcomes.append(outcome)

        workers = [threading.Thread(target=push, args=(f"dev-{i}",)) for i in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert sum(isinstance(o, Updated) for o in outcomes) == 1
        assert sum(isinstance(o, UpToDate) for o in outcomes) == 3
        assert store.read("user-1").version == 1


class TestPull:
    def test_absent_vault(self, version_puller, timestamp_puller):
        assert version_puller.pull("nobody") is None
        assert version_puller.to_response(None) == {"encrypted_blob": None, "version": None}
        assert timestamp_puller.to_response(None) == {"encrypted_blob": None, "lastModified": None}

    def test_pull_is_idempotent(self, version_coordinator, version_puller):
        version_coordinator.push("user-1", "laptop", b"B1", 3)
        first = version_puller.pull("user-1")
        assert version_puller.pull("user-1") == first
        assert version_puller.to_response(first) == {"encrypted_blob": "QjE=", "version": 3}

    def test_pull_never_locks(self, version_coordinator, version_puller, store):
        version_coordinator.push("user-1", "laptop", b"B1", 1)
        with store.transaction("user-1"):
            assert version_puller.pull("user-1") == VaultSnapshot(b"B1", 1)

    def test_default_policy_is_version(self, store):
        assert PullHandler(store).policy.name == "version"


class RevisionPolicy(VersionCounterPolicy):
    name = "revision"
    clock_field = "revision"


class TestClockField:
    def test_request_clock_is_read_from_policy_field(self):
        body = SyncRequest.model_validate({"encryptedBlob": "QjE=", "revision": 4, "version": 9})
        assert body.clock(RevisionPolicy.clock_field) == 4
        assert body.clock("lastModified") is None

    def test_pull_and_accept_bodies_use_policy_field(self, store):
        policy = RevisionPolicy()
        outcome = SyncCoordinator(store, policy).push("user-1", "laptop", b"B1", 4)
        assert outcome.to_response() == {"success": True, "newVersion": 4}

        puller = PullHandler(store, policy)
        assert puller.to_response(puller.pull("user-1")) == {"encrypted_blob": "QjE=", "revision": 4}
        assert puller.to_response(None) == {"encrypted_blob": None, "revision": None}
