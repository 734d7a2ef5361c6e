"""Tests for environment-driven settings."""

import pytest

from authgate.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("JWT_SECRET", "ENCRYPTION_KEY", "TEST_MODE", "ACCESS_TOKEN_TTL_MINUTES"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    yield tmp_path
    reset_settings_cache()


class TestFromEnv:
    def test_environment_values_are_coerced(self, clean_env, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("TEST_MODE", "true")

        settings = Settings.from_env()

        assert settings.jwt_secret == "x" * 40
        assert settings.access_token_ttl_minutes == 15
        assert settings.test_mode is True
        assert settings.shared_fs_root == str(clean_env)

    def test_dotenv_file_fills_gaps(self, clean_env, monkeypatch):
        (clean_env / ".env").write_text("ENCRYPTION_KEY=from-dotenv\nACCESS_TOKEN_TTL_MINUTES=20\n")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "25")

        settings = Settings.from_env()

        assert settings.encryption_key == "from-dotenv"
        assert settings.access_token_ttl_minutes == 25

    def test_get_settings_is_cached(self, clean_env):
        assert get_settings() is get_settings()


class TestJwtSecret:
    def test_generated_secret_is_persisted(self, clean_env):
        first = Settings.from_env().jwt_secret
        second = Settings.from_env().jwt_secret

        assert len(first) >= 32
        assert first == second
        assert (clean_env / ".jwt_secret").read_text() == first


class TestEncryptionKey:
    def test_configured_key_is_used(self):
        assert Settings(jwt_secret="s" * 40, encryption_key="k").resolve_encryption_key() == "k"

    def test_test_mode_gets_ephemeral_key(self):
        settings = Settings(jwt_secret="s" * 40, test_mode=True)

        assert settings.resolve_encryption_key() != settings.resolve_encryption_key()

    def test_missing_key_outside_tests_fails(self):
        with pytest.raises(RuntimeError):
            Settings(jwt_secret="s" * 40).resolve_encryption_key()


class TestTwoFactorLimits:
    def test_attempt_limit_from_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        monkeypatch.setenv("TWO_FACTOR_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("TWO_FACTOR_LOCKOUT_MINUTES", "15")

        settings = Settings.from_env()

        assert settings.two_factor_max_attempts == 3
        assert settings.two_factor_lockout_minutes == 15
