import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-testing-only")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authgate.config import Settings  # noqa: E402
from authgate.service.crypto import SecretCipher  # noqa: E402
from authgate.service.gateway import AuthenticationGateway  # noqa: E402
from authgate.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Correct-Horse9"


class FakeClock:
    """Controllable UTC clock injected into every service under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        encryption_key="unit-test-encryption-key",
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cipher(settings):
    return SecretCipher(settings.encryption_key)


@pytest.fixture
def gateway(store, settings, cipher, clock):
    return AuthenticationGateway.from_settings(store, settings, cipher=cipher, clock=clock)


@pytest.fixture
def make_identity(store, gateway):
    """Create an identity with a policy-compliant password."""

    def _make(email="user@example.com", password=PASSWORD, **kwargs):
        identity = store.create_identity(email, **kwargs)
        gateway.set_password(identity.id, password)
        return store.get_identity(identity.id)

    return _make

