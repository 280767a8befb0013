from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokengate.config import get_settings, reset_settings_cache
from tokengate.logging import get_logger
from tokengate.service.lifecycle import TokenService
from tokengate.service.tokens import Clock, TokenCodec
from tokengate.service.users import UserService
from tokengate.storage.memory import MemoryStore
from tokengate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` before it is logged."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore]
            if self.settings.use_memory_store:
                # test runs start from an empty store every time
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.codec = TokenCodec(self.settings, clock=clock)
        self.users = UserService(self.store)
        self.tokens = TokenService(
            self.store,
            self.store,
            self.codec,
            single_session=self.settings.token_single_session,
        )
        logger.info(
            "runtime_ready",
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            single_session=self.settings.token_single_session,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check stops two first callers from both
    building one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""

    global runtime
    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
