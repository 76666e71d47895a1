"""Per-run, per-host memoisation of expensive remote queries.

Handlers use the cache to avoid repeating the same probe within a run, for
example listing installed packages once rather than once per package task.
A cache belongs to exactly one engine and one host and is discarded when the
run ends: remote state may change between runs, so nothing is persisted.
"""

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

_MISSING = object()


class FactCache:
    """Single-owner key/value memo for one host during one run.

    Example:
        >>> cache = FactCache("web01")
        >>> packages = await cache.get_or_compute("packages", list_packages)
    """

    def __init__(self, host: str = "") -> None:
        self.host = host
        self._values: dict[str, Any] = {}
        self.hits = 0
        self.misses = 0

    async def get_or_compute(self, key: str, compute_fn: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key``, computing it on first use.

        A failing ``compute_fn`` caches nothing, so the next caller retries it.
        """
        value = self._values.get(key, _MISSING)
        if value is not _MISSING:
            self.hits += 1
            return value
        self.misses += 1
        value = await compute_fn()
        self._values[key] = value
        logger.debug(f"Cached fact '{key}' for {self.host}")
        return value

    def invalidate(self, key: str | None = None, prefix: str | None = None) -> None:
        """Drop one key, every key under a prefix, or everything."""
        if key is None and prefix is None:
            self._values.clear()
            return
        if key is not None:
            self._values.pop(key, None)
        if prefix is not None:
            for existing in [k for k in self._values if k.startswith(prefix)]:
                del self._values[existing]

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)
