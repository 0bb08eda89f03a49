"""Cache invalidation signal.

Storefront pages cache stock counts and order lists. After every
state-changing operation the core emits a best-effort invalidation
signal; delivery is fire-and-forget and never fails the operation.
"""

import asyncio
from enum import Enum
from typing import Protocol

import httpx
import structlog

from cardvault.infrastructure.config import settings

logger = structlog.get_logger()


class CacheTag(str, Enum):
    """Tags naming the cached views an operation affects."""

    ORDERS = "orders"
    ADMIN_ORDERS = "admin:orders"
    STOCK = "stock"

    @staticmethod
    def product(product_id: str) -> str:
        return f"product:{product_id}"


def tag_values(tags: tuple[str, ...]) -> list[str]:
    """Plain string form of the given tags."""
    return [tag.value if isinstance(tag, CacheTag) else tag for tag in tags]


class CacheInvalidator(Protocol):
    """Receiver of invalidation signals."""

    def invalidate(self, *tags: str) -> None: ...


class LoggingCacheInvalidator:
    """Invalidator that only records the signal in the log."""

    def invalidate(self, *tags: str) -> None:
        logger.debug("Cache invalidation signal", tags=tag_values(tags))


class HttpCacheInvalidator:
    """Posts invalidation tags to the storefront's revalidation endpoint.

    Each signal is sent from a background task. Failures are logged and
    dropped.
    """

    def __init__(self, url: str, timeout: float = 3.0) -> None:
        self.url = url
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def invalidate(self, *tags: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop, cache invalidation dropped", tags=tag_values(tags))
            return
        task = loop.create_task(self._send(tag_values(tags)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, tags: list[str]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json={"tags": tags})
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Cache invalidation failed", tags=tags, error=str(e))


class RecordingCacheInvalidator:
    """Invalidator that keeps every signal in memory."""

    def __init__(self) -> None:
        self.signals: list[tuple[str, ...]] = []

    def invalidate(self, *tags: str) -> None:
        self.signals.append(tuple(tag_values(tags)))

    @property
    def tags(self) -> set[str]:
        return {tag for signal in self.signals for tag in signal}


# Global invalidator instance
_invalidator: CacheInvalidator | None = None


def get_cache_invalidator() -> CacheInvalidator:
    """Get the cache invalidator singleton."""
    global _invalidator
    if _invalidator is None:
        if settings.cache_invalidation_url:
            _invalidator = HttpCacheInvalidator(settings.cache_invalidation_url)
        else:
            _invalidator = LoggingCacheInvalidator()
    return _invalidator
