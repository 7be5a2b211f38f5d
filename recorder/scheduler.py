"""Fixed-period capture loop shared by the screenshot, app and web loops.

Each loop instance owns one daemon thread and its own "current session"
state. Ticks of the same loop never overlap: if a tick is still running when
the next one is due, that tick is skipped rather than queued. Loops never
share mutable state with each other except through the record store.
"""

import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import ConfigManager, get_config_manager, positive_int
from .models import Record, RecordKind

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def run_with_timeout(func: Callable[[], None], timeout: float, label: str) -> bool:
    """Run ``func`` in a helper thread and give up after ``timeout`` seconds.

    Returns:
        True if ``func`` completed without raising. Failures and timeouts
        are logged as data loss and reported as False; nothing is raised.
    """
    errors: List[BaseException] = []

    def target():
        try:
            func()
        except Exception as e:
            errors.append(e)

    worker = threading.Thread(target=target, name=f"{label}-flush", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        logger.error(f"{label}: flush did not finish within {timeout:.1f}s, abandoning it (data loss)")
        return False
    if errors:
        logger.error(f"{label}: flush failed, final session lost (data loss): {errors[0]}")
        return False
    return True


class CaptureLoop:
    """Base class for a periodically ticking capture loop.

    Subclasses set ``name``, ``kind``, ``config_section`` and
    ``default_interval_ms`` and implement ``_tick``. Loops with an open
    in-progress session override ``_flush`` to persist it on ``stop()``.

    State machine: Idle -> Running -> Idle. ``start`` while running is a
    no-op. ``stop`` may be called from any thread and is bounded by the
    configured flush timeout.
    """

    name = "capture"
    kind: RecordKind = RecordKind.SCREENSHOT
    config_section = "screenshots"
    default_interval_ms = 10000

    def __init__(
        self,
        storage,
        config_manager: Optional[ConfigManager] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.config_manager = config_manager or get_config_manager()
        self.clock = clock or utcnow
        self.interval_ms = self.default_interval_ms
        self.settings = None

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._generation = 0
        self._lifecycle_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._active = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval_ms=None) -> bool:
        """Start ticking every ``interval_ms`` milliseconds.

        Invalid or missing intervals fall back to the configured value, then
        to the loop's default. The first tick runs before this returns.

        Returns:
            False if the loop was already running, True otherwise.

        Raises:
            CaptureUnavailable: If the capture primitive cannot be initialized;
                the loop stays idle.
        """
        with self._lifecycle_lock:
            if self._active:
                logger.debug(f"{self.name} loop already running")
                return False

            self.settings = self._prepare()
            configured = positive_int(getattr(self.settings, "interval_ms", None), self.default_interval_ms)
            self.interval_ms = positive_int(interval_ms, configured) if interval_ms is not None else configured

            # A run abandoned by a timed-out stop() keeps its own event and
            # generation, so it can neither resume ticking nor flush this run.
            self._generation += 1
            self._stop_event = threading.Event()
            self._active = True
            self.tick_once()

            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, self._generation),
                name=f"{self.name}-loop",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"{self.name} loop started (interval {self.interval_ms}ms)")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Cancel ticking and flush the open session.

        Returns:
            True if the final session was flushed, False if the flush failed
            or timed out. The loop is idle afterwards either way.
        """
        with self._lifecycle_lock:
            if not self._active:
                return True
            self._active = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            generation = self._generation

        if timeout is None:
            timeout = self.config_manager.config.storage.flush_timeout_seconds

        deadline = time.monotonic() + timeout
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"{self.name} loop thread still busy after {timeout:.1f}s")

        remaining = max(deadline - time.monotonic(), 0.0)
        flushed = run_with_timeout(lambda: self._locked_flush(generation), remaining, self.name)
        logger.info(f"{self.name} loop stopped")
        return flushed

    def is_active(self) -> bool:
        return self._active

    def get_recent(self, limit: int = 50) -> List[Record]:
        """Newest records produced by this loop."""
        return self.storage.find(self.kind, limit=positive_int(limit, 50))

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def tick_once(self) -> bool:
        """Run a single tick unless one is already in progress.

        Errors are contained: they are logged and the loop state is left as
        it was for the next tick.

        Returns:
            True if the tick ran to completion.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug(f"{self.name} tick still running, skipping")
            return False
        try:
            self._tick()
            return True
        except Exception as e:
            logger.error(f"{self.name} tick failed: {e}")
            return False
        finally:
            self._tick_lock.release()

    def _run(self, stop_event: threading.Event, generation: int) -> None:
        interval = self.interval_ms / 1000.0
        next_due = time.monotonic() + interval

        while not stop_event.is_set():
            now = time.monotonic()
            if now < next_due:
                if stop_event.wait(next_due - now):
                    break
            if generation != self._generation:
                break

            self.tick_once()

            next_due += interval
            now = time.monotonic()
            if next_due <= now:
                missed = int((now - next_due) // interval) + 1
                next_due += missed * interval
                logger.debug(f"{self.name} tick overran, skipped {missed} period(s)")

    def _locked_flush(self, generation: int) -> None:
        with self._tick_lock:
            if generation != self._generation:
                logger.warning(f"{self.name}: skipping flush of a run that was already restarted")
                return
            self._flush()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _prepare(self):
        """Snapshot this loop's config section; called once per ``start()``."""
        return copy.deepcopy(getattr(self.config_manager.config, self.config_section))

    def _tick(self) -> None:
        raise NotImplementedError

    def _flush(self) -> None:
        """Persist any open in-progress session. Default: nothing open."""
