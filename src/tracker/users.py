"""Time-bounded cache of the tracker's user list."""

import logging
import time
from collections.abc import Callable

from src.tracker.client import TrackerClient, TrackerError, TrackerUser

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class TrackerUserCache:
    """Caches ``users`` from the tracker and refreshes it once it goes stale.

    Never raises: a failed refresh logs and returns the last known list, and
    leaves the timestamp alone so the next call tries again.
    """

    def __init__(
        self,
        client: TrackerClient,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._clock = clock
        self._users: list[TrackerUser] = []
        self._fetched_at: float | None = None

    def is_stale(self) -> bool:
        if not self._users or self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self._ttl

    async def get_users(self) -> list[TrackerUser]:
        if not self.is_stale():
            return list(self._users)

        try:
            users = await self._client.list_users()
        except TrackerError:
            logger.exception("Failed to refresh Linear users; using %d cached", len(self._users))
            return list(self._users)

        if users is None:
            logger.warning("Linear users response had no user list; using %d cached", len(self._users))
            return list(self._users)

        self._users = list(users)
        self._fetched_at = self._clock()
        logger.debug("Refreshed Linear user cache (%d users)", len(self._users))
        return list(self._users)
