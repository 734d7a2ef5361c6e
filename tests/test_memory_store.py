"""Tests for the in-memory credential store: atomic counters, 2FA records, persistence."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authgate.policy import OrganizationSecurityPolicy
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.memory import MemoryStore
from authgate.storage.models import (
    AccountStatus,
    EventCategory,
    SecurityEvent,
    Session,
    TwoFactorCredential,
)

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _fail(store, identity_id, *, now=NOW, max_attempts=5, attempt_id=None):
    return store.record_failed_attempt(
        identity_id,
        now=now,
        max_attempts=max_attempts,
        lockout_until=now + timedelta(minutes=30),
        attempt_id=attempt_id,
    )


class TestIdentities:
    def test_email_is_normalized_and_unique(self, store):
        created = store.create_identity("  Mixed@Example.COM ")

        assert created.email == "mixed@example.com"
        assert store.get_identity_by_email("MIXED@example.com").id == created.id
        with pytest.raises(ConstraintViolation):
            store.create_identity("mixed@example.com")

    def test_records_are_copies(self, store):
        identity = store.create_identity("copy@example.com")
        identity.failed_login_attempts = 99

        assert store.get_identity(identity.id).failed_login_attempts == 0

    def test_password_requires_identity(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestFailedAttempts:
    def test_locks_at_threshold(self, store):
        identity = store.create_identity("lock@example.com")
        for _ in range(2):
            updated = _fail(store, identity.id, max_attempts=3)
            assert updated.locked_until is None

        locked = _fail(store, identity.id, max_attempts=3)

        assert locked.failed_login_attempts == 3
        assert locked.account_status == AccountStatus.LOCKED
        assert locked.locked_until == NOW + timedelta(minutes=30)

    def test_retried_attempt_id_counts_once(self, store):
        identity = store.create_identity("retry@example.com")

        _fail(store, identity.id, attempt_id="req-1")
        again = _fail(store, identity.id, attempt_id="req-1")

        assert again.failed_login_attempts == 1

    def test_elapsed_lock_restarts_count(self, store):
        identity = store.create_identity("expired@example.com")
        for _ in range(3):
            _fail(store, identity.id, max_attempts=3)

        later = NOW + timedelta(minutes=31)
        updated = _fail(store, identity.id, now=later, max_attempts=3)

        assert updated.failed_login_attempts == 1
        assert updated.locked_until is None
        assert updated.account_status == AccountStatus.ACTIVE

    def test_concurrent_failures_are_not_lost(self, store):
        identity = store.create_identity("race@example.com")
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            _fail(store, identity.id, max_attempts=100)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_identity(identity.id).failed_login_attempts == 20

    def test_reset_clears_lock_and_status(self, store):
        identity = store.create_identity("reset@example.com")
        for _ in range(5):
            _fail(store, identity.id)

        reset = store.reset_failed_attempts(identity.id)

        assert reset.failed_login_attempts == 0
        assert reset.locked_until is None
        assert reset.account_status == AccountStatus.ACTIVE


class TestTwoFactorRecords:
    def _credential(self, user_id, hashes=("h1", "h2")):
        return TwoFactorCredential(
            user_id=user_id,
            secret="encrypted",
            backup_code_hashes=list(hashes),
            created_at=NOW,
        )

    def test_enable_sets_both_records(self, store):
        identity = store.create_identity("mfa@example.com")
        store.upsert_two_factor(self._credential(identity.id))

        assert store.enable_two_factor(identity.id, verified_at=NOW) is True
        assert store.get_identity(identity.id).two_factor_enabled is True
        credential = store.get_two_factor(identity.id)
        assert credential.is_verified is True
        assert credential.verified_at == NOW
        assert store.enable_two_factor(identity.id, verified_at=NOW) is False

    def test_disable_removes_credential_and_flag(self, store):
        identity = store.create_identity("off@example.com")
        store.upsert_two_factor(self._credential(identity.id))
        store.enable_two_factor(identity.id, verified_at=NOW)

        assert store.disable_two_factor(identity.id) is True
        assert store.get_two_factor(identity.id) is None
        assert store.get_identity(identity.id).two_factor_enabled is False
        assert store.disable_two_factor(identity.id) is False

    def test_backup_code_consumed_once(self, store):
        identity = store.create_identity("codes@example.com")
        store.upsert_two_factor(self._credential(identity.id))
        store.enable_two_factor(identity.id, verified_at=NOW)

        assert store.consume_backup_code(identity.id, "h1", used_at=NOW) is True
        assert store.consume_backup_code(identity.id, "h1", used_at=NOW) is False
        assert store.consume_backup_code(identity.id, "unknown", used_at=NOW) is False
        assert store.get_two_factor(identity.id).backup_codes_remaining == 1

    def test_backup_code_race_has_single_winner(self, store):
        identity = store.create_identity("codes-race@example.com")
        store.upsert_two_factor(self._credential(identity.id))
        store.enable_two_factor(identity.id, verified_at=NOW)
        barrier = threading.Barrier(10)
        results = []

        def worker():
            barrier.wait()
            results.append(store.consume_backup_code(identity.id, "h2", used_at=NOW))

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_unverified_credential_cannot_spend_codes(self, store):
        identity = store.create_identity("pending@example.com")
        store.upsert_two_factor(self._credential(identity.id))

        assert store.consume_backup_code(identity.id, "h1", used_at=NOW) is False


class TestSessionsAndEvents:
    def test_terminate_sets_expiry_once(self, store):
        identity = store.create_identity("sess@example.com")
        session = Session.new(identity.id, NOW + timedelta(hours=1), now=NOW)
        store.create_session(session)

        first = store.terminate_session(session.id, terminated_at=NOW, reason="manual_logout")
        second = store.terminate_session(
            session.id, terminated_at=NOW + timedelta(minutes=5), reason="idle_timeout"
        )

        assert first.expires_at == NOW
        assert second.expires_at == NOW
        assert second.termination_reason == "manual_logout"
        assert store.terminate_session("missing", terminated_at=NOW, reason="x") is None

    def test_list_sessions_filters_active(self, store):
        identity = store.create_identity("list@example.com")
        live = store.create_session(Session.new(identity.id, NOW + timedelta(hours=1), now=NOW))
        dead = store.create_session(Session.new(identity.id, NOW - timedelta(minutes=1), now=NOW))

        active_ids = [s.id for s in store.list_sessions(identity.id, active_at=NOW)]

        assert active_ids == [live.id]
        assert len(store.list_sessions(identity.id)) == 2
        assert dead.id not in active_ids

    def test_events_listed_newest_first(self, store):
        for idx, event_type in enumerate(["login_failed", "login_success", "login_failed"]):
            store.append_security_event(
                SecurityEvent(
                    id=f"e{idx}",
                    event_type=event_type,
                    event_category=EventCategory.AUTHENTICATION,
                    description="",
                    success=event_type == "login_success",
                    created_at=NOW + timedelta(seconds=idx),
                    user_id="u1",
                )
            )

        events = store.list_security_events(user_id="u1", event_type="login_failed")

        assert [e.id for e in events] == ["e2", "e0"]
        assert len(store.list_security_events(limit=1)) == 1


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), persist=True)
        identity = store.create_identity("persist@example.com", organization_id="acme", role="admin")
        store.save_password(identity.id, "hash", "argon2id")
        store.set_organization_policy("acme", OrganizationSecurityPolicy(max_failed_attempts=2))
        store.upsert_two_factor(
            TwoFactorCredential(
                user_id=identity.id,
                secret="enc",
                backup_code_hashes=["h1"],
                created_at=NOW,
            )
        )
        store.enable_two_factor(identity.id, verified_at=NOW)
        session = store.create_session(
            Session.new(identity.id, NOW + timedelta(hours=1), now=NOW, ip_address="10.0.0.1")
        )
        _fail(store, identity.id, max_attempts=2)

        reloaded = MemoryStore(fs_root=str(tmp_path), persist=True)

        again = reloaded.get_identity(identity.id)
        assert again.role == "admin"
        assert again.two_factor_enabled is True
        assert again.failed_login_attempts == 1
        assert reloaded.get_password_record(identity.id) == ("hash", "argon2id")
        assert reloaded.get_organization_policy("acme").max_failed_attempts == 2
        assert reloaded.get_two_factor(identity.id).verified_at == NOW
        assert reloaded.get_session(session.id).ip_address == "10.0.0.1"

    def test_unwritable_state_raises_store_unavailable(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path), persist=True)
        monkeypatch.setattr(store, "_state_path", lambda: tmp_path / "missing" / "state.json")

        with pytest.raises(StoreUnavailable):
            store.create_identity("nowhere@example.com")
