from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from stepchain.config import get_settings, reset_settings_cache
from stepchain.logging import get_logger
from stepchain.service.credentials import CredentialCache
from stepchain.service.memory import ConversationMemory
from stepchain.service.providers import build_adapters
from stepchain.service.relay import ProxyRelay
from stepchain.service.steps import StepStateMachine
from stepchain.service.workflow import WorkflowService
from stepchain.storage.memory import MemoryStore
from stepchain.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Every collaborator is built once here and handed to the services that
    need it, so the step state machine and the memory manager share one relay
    and the relay shares one credential cache with the settings endpoint.
    """

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store or not self.settings.redis_url else "redis"
        try:
            if store_type == "memory":
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.settings_encryption_key,
                )
            else:
                store = RedisStore(
                    self.settings.redis_url,
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.settings_encryption_key,
                )
                store.verify_connection()
                self.store = store
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.credentials = CredentialCache(
            self.store,
            ttl_seconds=self.settings.credential_cache_ttl_seconds,
            fallbacks=self.settings.provider_key_fallbacks(),
        )
        self.relay = ProxyRelay(
            self.credentials,
            self.store,
            adapters=build_adapters(self.settings),
            timeout_seconds=self.settings.upstream_timeout_seconds,
            transport=transport,
        )
        self.memory = ConversationMemory(
            self.relay, window_size=self.settings.memory_window_size
        )
        self.steps = StepStateMachine(
            self.store,
            self.relay,
            self.memory,
            stale_after_seconds=self.settings.stale_generation_seconds,
        )
        self.workflows = WorkflowService(self.store)
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            memory_window_size=self.settings.memory_window_size,
        )

    async def aclose(self) -> None:
        await self.relay.aclose()
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(transport=transport)
        return runtime
