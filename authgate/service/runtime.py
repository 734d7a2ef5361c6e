from __future__ import annotations

import threading
from typing import Optional

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.crypto import SecretCipher
from authgate.service.gateway import AuthenticationGateway
from authgate.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            persist_memory_store=self.settings.persist_memory_store,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.persist_memory_store,
            )
        except OSError as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.cipher = SecretCipher(self.settings.resolve_encryption_key())
        self.gateway = AuthenticationGateway.from_settings(
            self.store, self.settings, cipher=self.cipher
        )
        logger.info("runtime_init_completed")


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton under a double-checked lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
