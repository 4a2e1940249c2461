import logging
import time
from typing import Callable

from newsreader.store import MIN_FETCH_INTERVAL_SECONDS, ArticleStore

logger = logging.getLogger(__name__)


class FetchGovernor:
    """
    Minimum-interval gate for upstream fetch cycles.

    This is about not hammering the feed proxy, not about data staleness (the
    store's expiry handles that). The attempt time is kept in memory and written
    through to the store's metadata, and the later of the two wins, so the window
    survives restarts and still holds while the database is unavailable.
    """

    def __init__(
        self,
        store: ArticleStore,
        min_interval: float = MIN_FETCH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.min_interval = min_interval
        self._clock = clock
        self._last_fetch_time = 0.0

    def last_fetch_time(self) -> float:
        persisted = self._store.last_fetch_time() or 0.0
        return max(self._last_fetch_time, persisted)

    def is_fetch_allowed(self) -> bool:
        return self._clock() - self.last_fetch_time() >= self.min_interval

    def time_until_next_fetch(self) -> float:
        elapsed = self._clock() - self.last_fetch_time()
        return max(0.0, self.min_interval - elapsed)

    def record_fetch_attempt(self) -> None:
        """Stamp the start of a fetch cycle so overlapping triggers see the window as closed."""
        now = self._clock()
        self._last_fetch_time = now
        self._store.touch_last_fetch_time(now)
        logger.debug(f"Fetch attempt recorded at {now:.0f}")

    def reset(self) -> None:
        """Forget the in-memory attempt time. The persisted one is reset by ArticleStore.clear()."""
        self._last_fetch_time = 0.0
