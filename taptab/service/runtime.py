from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from taptab.config import get_settings, reset_settings_cache
from taptab.logging import get_logger
from taptab.service.auth import AuthService
from taptab.service.delivery import CodeSender, LoggingCodeSender
from taptab.storage.errors import StoreUnavailableError
from taptab.storage.memory import MemoryStore
from taptab.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide store and services."""

    def __init__(self, *, sender: Optional[CodeSender] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = RedisStore(
                self.settings.redis_url,
                key_prefix=self.settings.redis_key_prefix,
                socket_timeout=self.settings.redis_socket_timeout,
            )
        self.auth = AuthService(
            self.store,
            self.settings,
            sender=sender or LoggingCodeSender(),
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
            redis_url=None if self.settings.use_memory_store else _mask_url_password(self.settings.redis_url),
        )

    def warmup(self) -> dict:
        """Ping the store so the first real request does not pay connection setup.

        Raises StoreUnavailableError when the store cannot be reached.
        """
        try:
            self.store.verify_connection()
        except StoreUnavailableError:
            logger.error("runtime_warmup_failed")
            raise
        logger.info("runtime_warmup_complete")
        return {
            "store": "memory" if isinstance(self.store, MemoryStore) else "redis",
            "store_ok": True,
        }

    def close(self) -> None:
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent duplicate construction
    """
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
