"""Content-addressed TTL cache for embedding vectors."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Self

import numpy as np

from .config import config

logger = config.get_logger(__name__)


def normalize_text(text: str) -> str:
    """Collapse newlines to spaces and trim, as done before embedding.

    Returns:
        The normalized text.
    """
    return text.replace("\n", " ").strip()


def cache_key(text: str) -> str:
    """Derive the cache key for a text.

    The text is normalized here so that every caller hashes identically.

    Returns:
        Hex md5 digest of the normalized text.
    """
    return hashlib.md5(normalize_text(text).encode("utf-8")).hexdigest()  # noqa: S324


@dataclass
class CacheEntry:
    """A cached vector and the clock time after which it is stale."""

    value: np.ndarray
    expiry: float


class EmbeddingCache:
    """In-memory TTL cache with lazy expiry and a periodic background sweep."""

    def __init__(
        self,
        default_ttl: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            default_ttl: Seconds an entry lives when ``set`` gets no TTL.
                If None, uses config.EMBEDDING_CACHE_TTL.
            sweep_interval: Seconds between background sweeps.
                If None, uses config.CACHE_SWEEP_INTERVAL.
            clock: Monotonic time source, injectable for tests.
        """
        self.default_ttl = (
            config.EMBEDDING_CACHE_TTL if default_ttl is None else default_ttl
        )
        self.sweep_interval = (
            config.CACHE_SWEEP_INTERVAL if sweep_interval is None else sweep_interval
        )
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def get(self, key: str) -> np.ndarray | None:
        """Return the cached vector, dropping it if it has expired."""  # noqa: DOC201
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expiry:
                del self._store[key]
                return None
            return entry.value

    def set(self, key: str, value: np.ndarray, ttl_seconds: float | None = None) -> None:
        """Store a read-only copy of the vector under key."""
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        frozen = np.array(value, dtype=np.float32)
        frozen.setflags(write=False)
        with self._lock:
            self._store[key] = CacheEntry(value=frozen, expiry=self._clock() + ttl)

    def has(self, key: str) -> bool:
        """Check for a live entry."""  # noqa: DOC201
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if now > entry.expiry]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug("Swept %d expired embedding cache entries", len(expired))
        return len(expired)

    @property
    def sweeping(self) -> bool:
        """Whether a background sweep is scheduled on the running event loop."""  # noqa: DOC201
        sweeper = self._sweeper
        if sweeper is None or sweeper.done():
            return False
        try:
            return sweeper.get_loop() is asyncio.get_running_loop()
        except RuntimeError:
            return False

    def start(self) -> None:
        """Start the background sweep on the running event loop.

        A sweep left behind by a closed event loop is replaced.
        """
        if self.sweeping:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        logger.debug("Started embedding cache sweep every %ss", self.sweep_interval)

    async def stop(self) -> None:
        """Cancel the background sweep if it is running."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.cleanup()

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
