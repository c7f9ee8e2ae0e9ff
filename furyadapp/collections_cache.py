"""Periodically refreshed in-memory cache of marketplace collections."""

import logging
import threading
from typing import Any, Callable, Iterable, Iterator, List, Optional, Protocol

REFRESH_DELAY = 120.0
FETCH_LIMIT = 100

logger = logging.getLogger(__name__)


class CollectionsProvider(Protocol):
    """Anything that can page through collections."""

    def collections(self, limit: int, offset: int) -> Iterator[Any]:
        ...


class CachedCollectionsProvider:
    """Keeps the result of ``fetch`` in memory and refreshes it in the background."""

    def __init__(
        self,
        fetch: Callable[[], Iterable[Any]],
        refresh_delay: float = REFRESH_DELAY,
    ) -> None:
        self._fetch = fetch
        self._refresh_delay = refresh_delay
        self._lock = threading.Lock()
        self._collections: List[Any] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh(self) -> bool:
        """Fetch once; on failure keep the previous data. Returns whether it succeeded."""
        try:
            collections = list(self._fetch())
        except Exception:
            logger.exception("failed to fetch collections")
            return False
        with self._lock:
            self._collections = collections
        return True

    def _run(self) -> None:
        while True:
            self.refresh()
            if self._stop_event.wait(self._refresh_delay):
                logger.info("stopping cached collections refresh")
                return

    def start(self) -> None:
        """Start the background refresh loop if it is not already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="collections-refresh", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background refresh loop and wait for it to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def collections(self, limit: int, offset: int) -> Iterator[Any]:
        """Iterate over at most ``limit`` cached collections starting at ``offset``."""
        with self._lock:
            snapshot = self._collections
        if offset > len(snapshot):
            return iter(())
        end = min(offset + limit, len(snapshot))
        return iter(snapshot[offset:end])

    def __enter__(self) -> "CachedCollectionsProvider":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()