"""Tests for failed-attempt counting and lock decisions."""

from datetime import timedelta

import pytest

from authgate.policy import OrganizationSecurityPolicy
from authgate.service.audit import RiskAuditLog
from authgate.service.errors import NotFoundError
from authgate.service.lockout import LockoutPolicyEngine
from authgate.storage.models import AccountStatus, EventCategory


@pytest.fixture
def engine(store, clock):
    return LockoutPolicyEngine(store, RiskAuditLog(store, clock=clock), clock=clock)


class TestCheckLockout:
    def test_unknown_email_is_not_locked(self, engine):
        status = engine.check_lockout("ghost@example.com")

        assert status.locked is False
        assert status.reason is None

    def test_locked_after_threshold_with_reason(self, engine, store, clock):
        identity = store.create_identity("five@example.com")
        for _ in range(5):
            engine.record_failure(identity.email)

        status = engine.check_lockout(identity.email)

        assert status.locked is True
        assert status.locked_until == clock() + timedelta(minutes=30)
        assert status.reason == f"account locked until {status.locked_until.isoformat()}"
        assert store.get_identity(identity.id).account_status == AccountStatus.LOCKED

    def test_four_failures_do_not_lock(self, engine, store):
        identity = store.create_identity("four@example.com")
        for _ in range(4):
            engine.record_failure(identity.email)

        assert engine.check_lockout(identity.email).locked is False
        assert store.get_identity(identity.id).failed_login_attempts == 4

    def test_lock_expires_lazily(self, engine, store, clock):
        identity = store.create_identity("lazy@example.com")
        for _ in range(5):
            engine.record_failure(identity.email)

        clock.advance(minutes=29)
        assert engine.check_lockout(identity.email).locked is True
        clock.advance(minutes=2)
        assert engine.check_lockout(identity.email).locked is False

        updated = engine.record_failure(identity.email)
        assert updated.failed_login_attempts == 1

    def test_organization_policy_threshold(self, engine, store, clock):
        store.set_organization_policy(
            "acme",
            OrganizationSecurityPolicy(max_failed_attempts=3, lockout_duration_minutes=10),
        )
        identity = store.create_identity("org@example.com", organization_id="acme")
        for _ in range(3):
            engine.record_failure(identity.email)

        status = engine.check_lockout(identity.email)

        assert status.locked is True
        assert status.locked_until == clock() + timedelta(minutes=10)
        clock.advance(minutes=11)
        assert engine.check_lockout(identity.email).locked is False


class TestRecordSuccess:
    def test_success_resets_counter(self, engine, store):
        identity = store.create_identity("reset@example.com")
        engine.record_failure(identity.email)
        engine.record_failure(identity.email)

        engine.record_success(identity.email)

        assert store.get_identity(identity.id).failed_login_attempts == 0

    def test_unknown_email_is_ignored(self, engine):
        assert engine.record_failure("ghost@example.com") is None
        assert engine.record_success("ghost@example.com") is None


class TestUnlock:
    def test_unlock_clears_lock_and_audits(self, engine, store):
        identity = store.create_identity("admin-unlock@example.com")
        for _ in range(5):
            engine.record_failure(identity.email)

        engine.unlock(identity.id, unlocked_by="ops@example.com")

        assert engine.check_lockout(identity.email).locked is False
        refreshed = store.get_identity(identity.id)
        assert refreshed.account_status == AccountStatus.ACTIVE
        assert refreshed.failed_login_attempts == 0
        events = store.list_security_events(user_id=identity.id, event_type="account_unlocked")
        assert len(events) == 1
        assert events[0].risk_score == -5
        assert events[0].event_category == EventCategory.ADMIN_ACTION
        assert events[0].details == {"unlocked_by": "ops@example.com"}

    def test_unlock_unknown_identity(self, engine):
        with pytest.raises(NotFoundError):
            engine.unlock("missing")
