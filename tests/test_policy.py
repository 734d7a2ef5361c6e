"""Tests for organization security policy parsing and password rules."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from authgate.policy import (
    DEFAULT_POLICY,
    OrganizationSecurityPolicy,
    PasswordPolicy,
    default_policy_from_settings,
    resolve_policy,
)


class TestPasswordPolicy:
    def test_compliant_password_has_no_violations(self):
        assert PasswordPolicy().violations("Correct-Horse9") == []

    def test_each_missing_class_is_reported(self):
        problems = PasswordPolicy().violations("short")

        assert "Password must be at least 8 characters" in problems
        assert "Password must contain an uppercase letter" in problems
        assert "Password must contain a number" in problems
        assert "Password must contain a special character" in problems
        assert "Password must contain a lowercase letter" not in problems

    def test_relaxed_policy_skips_disabled_rules(self):
        policy = PasswordPolicy(require_special_chars=False, require_uppercase=False)

        assert policy.violations("lowercase1") == []

    def test_max_length_enforced(self):
        policy = PasswordPolicy(max_length=10)

        assert policy.violations("Aa1!" * 3) == ["Password must be less than 10 characters"]


class TestOrganizationSecurityPolicy:
    def test_documented_defaults(self):
        policy = OrganizationSecurityPolicy()

        assert policy.max_failed_attempts == 5
        assert policy.lockout_duration_minutes == 30
        assert policy.max_concurrent_sessions == 3
        assert policy.idle_timeout_minutes == 30
        assert policy.require_2fa is False

    def test_from_blob_flattens_nested_sections(self):
        blob = {
            "account_policy": {"max_failed_attempts": 3, "lockout_duration_minutes": 15},
            "session_policy": {"max_concurrent_sessions": 2, "idle_timeout_minutes": 10},
            "password_policy": {"min_length": 12, "require_symbols": False},
            "network_policy": {"ip_whitelist": ["10.0.0.0/8"]},
            "require_2fa": True,
        }

        policy = OrganizationSecurityPolicy.from_blob(blob)

        assert policy.max_failed_attempts == 3
        assert policy.lockout_duration_minutes == 15
        assert policy.max_concurrent_sessions == 2
        assert policy.idle_timeout_minutes == 10
        assert policy.require_2fa is True
        assert policy.password_policy.min_length == 12
        assert policy.password_policy.require_special_chars is False

    def test_from_blob_empty_returns_defaults(self):
        assert OrganizationSecurityPolicy.from_blob(None) == OrganizationSecurityPolicy()
        assert OrganizationSecurityPolicy.from_blob({}) == OrganizationSecurityPolicy()

    def test_from_blob_rejects_nonsense_values(self):
        with pytest.raises(PydanticValidationError):
            OrganizationSecurityPolicy.from_blob({"max_failed_attempts": 0})

    def test_admin_only_two_factor_requirement(self):
        policy = OrganizationSecurityPolicy(require_2fa_for_admins=True)

        assert policy.requires_two_factor("admin") is True
        assert policy.requires_two_factor("member") is False


class TestResolvePolicy:
    def test_identity_without_org_uses_default(self, store):
        identity = store.create_identity("solo@example.com")

        assert resolve_policy(store, identity) is DEFAULT_POLICY

    def test_org_without_stored_policy_uses_default(self, store):
        identity = store.create_identity("a@example.com", organization_id="org-x")

        assert resolve_policy(store, identity) is DEFAULT_POLICY

    def test_org_policy_wins(self, store):
        custom = OrganizationSecurityPolicy(max_failed_attempts=2)
        store.set_organization_policy("acme", custom)
        identity = store.create_identity("b@example.com", organization_id="acme")

        assert resolve_policy(store, identity).max_failed_attempts == 2

    def test_settings_override_defaults(self, settings):
        tuned = settings.model_copy(update={"default_max_concurrent_sessions": 7})

        assert default_policy_from_settings(tuned).max_concurrent_sessions == 7
