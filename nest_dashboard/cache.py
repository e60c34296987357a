"""Short-lived cache for the raw upstream device list."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .const import DEFAULT_CACHE_TTL
from .models import CacheEntry, utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

_LOGGER = logging.getLogger(__name__)


class DeviceCache:
    """Single-slot cache of the device list with a time-to-live.

    The slot is shared by the whole process. Concurrent misses may each
    fetch; the last one to finish wins.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the cache."""
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock
        self._entry: CacheEntry | None = None

    @property
    def entry(self) -> CacheEntry | None:
        """Return the current entry, fresh or not."""
        return self._entry

    def is_fresh(self) -> bool:
        """Return True if the cached entry may still be served."""
        if self._entry is None:
            return False
        return self._clock() - self._entry.fetched_at < self._ttl

    async def async_get_devices(
        self,
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
        *,
        force_refresh: bool = False,
    ) -> tuple[dict[str, Any], ...]:
        """Return the device list, fetching it when stale or forced.

        Args:
            fetch: Coroutine function returning the raw upstream list.
            force_refresh: Skip the cached entry even if it is fresh.

        Returns:
            The raw upstream devices.

        """
        if not force_refresh and self._entry is not None and self.is_fresh():
            _LOGGER.debug("Serving %d devices from cache", len(self._entry.devices))
            return self._entry.devices

        devices = tuple(await fetch())
        self._entry = CacheEntry(devices=devices, fetched_at=self._clock())
        _LOGGER.debug("Cached %d devices", len(devices))
        return devices

    def invalidate(self) -> None:
        """Drop the cached entry."""
        self._entry = None
