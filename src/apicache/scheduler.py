"""Background maintenance for the persistent tier.

:class:`MaintenanceScheduler` runs :meth:`EntityStore.clear_expired
<apicache.persistent.EntityStore.clear_expired>` on a fixed interval in a
daemon thread. Each sweep is a single ``DELETE`` statement, so stopping the
scheduler never leaves a sweep half applied.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from apicache.persistent import EntityStore

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Periodic sweep of expired persistent records.

    Example::

        scheduler = MaintenanceScheduler(store, interval=3600)
        scheduler.start()
        ...
        scheduler.stop()

    Args:
        store: The persistent store to sweep.
        interval: Seconds between sweeps.
        run_on_start: Sweep once immediately when started.
        on_sweep: Called with the number of records removed after each
            successful background sweep.
        on_error: Called with the exception when a background sweep fails.
    """

    def __init__(
        self,
        store: EntityStore,
        interval: float = 3600.0,
        *,
        run_on_start: bool = False,
        on_sweep: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._store = store
        self._interval = interval
        self._run_on_start = run_on_start
        self._on_sweep = on_sweep
        self._on_error = on_error

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

        self.run_count = 0
        self.error_count = 0
        self.total_removed = 0
        self.last_removed: Optional[int] = None
        self.last_run: Optional[float] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def start(self) -> None:
        """Start sweeping in the background. A no-op when already running."""
        with self._lock:
            if self._thread is not None:
                return
            # Each run gets its own event so a restart never revives a stopping thread.
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                name="apicache-maintenance",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        logger.info("Cache maintenance started (every %gs)", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the pending wait and stop the loop.

        Returns immediately unless *timeout* is given, in which case it waits
        up to that many seconds for an in-flight sweep to finish.
        """
        with self._lock:
            if self._thread is None:
                return
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        stop_event.set()
        if timeout is not None:
            thread.join(timeout)
        logger.info("Cache maintenance stopped")

    def run_now(self) -> int:
        """Sweep synchronously and return the number of records removed.

        Unlike background sweeps, failures propagate to the caller.
        """
        removed = self._store.clear_expired()
        self.run_count += 1
        self.total_removed += removed
        self.last_removed = removed
        self.last_run = time.time()
        if removed:
            logger.info("Cache maintenance cleared %d expired records", removed)
        return removed

    def _sweep(self) -> None:
        try:
            removed = self.run_now()
        except Exception as exc:
            self.error_count += 1
            logger.exception("Cache maintenance sweep failed: %s", exc)
            if self._on_error is not None:
                try:
                    self._on_error(exc)
                except Exception as callback_exc:
                    logger.warning("Maintenance error callback failed: %s", callback_exc)
            return
        if self._on_sweep is not None:
            try:
                self._on_sweep(removed)
            except Exception as callback_exc:
                logger.warning("Maintenance sweep callback failed: %s", callback_exc)

    def _run_loop(self, stop_event: threading.Event) -> None:
        if self._run_on_start and not stop_event.is_set():
            self._sweep()
        while not stop_event.wait(self._interval):
            self._sweep()
