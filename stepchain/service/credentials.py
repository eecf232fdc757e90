from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Mapping, Optional, Protocol

from stepchain.logging import get_logger
from stepchain.service.providers import Provider

logger = get_logger(__name__)


class ApiKeySource(Protocol):
    def get_api_keys(self) -> Dict[str, str]: ...


class CredentialCache:
    """Read-mostly provider key cache.

    Keys are loaded from the store's settings in one read and reused until
    either ``ttl_seconds`` elapses or :meth:`invalidate` is called after an
    administrative key update. Environment fallbacks fill any provider the
    store has no key for.
    """

    def __init__(
        self,
        source: ApiKeySource,
        *,
        ttl_seconds: float = 300,
        fallbacks: Optional[Mapping[str, Optional[str]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.fallbacks = {k: v for k, v in (fallbacks or {}).items() if v}
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: Optional[Dict[str, str]] = None
        self._expires_at = 0.0

    def _load(self) -> Dict[str, str]:
        with self._lock:
            now = self._clock()
            if self._keys is not None and now < self._expires_at:
                return self._keys
            keys = dict(self.fallbacks)
            keys.update({k: v for k, v in self.source.get_api_keys().items() if v})
            self._keys = keys
            self._expires_at = now + self.ttl_seconds
            logger.info("api_keys_loaded", providers=sorted(keys))
            return keys

    def resolve(self, provider: Provider | str) -> Optional[str]:
        """Return the secret for ``provider`` or None when no key is configured."""
        return self._load().get(Provider.parse(provider).key_name)

    def configured(self) -> Dict[str, str]:
        return dict(self._load())

    def invalidate(self) -> None:
        with self._lock:
            self._keys = None
            self._expires_at = 0.0
        logger.info("api_key_cache_invalidated")
