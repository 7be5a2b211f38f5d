"""Tests for the shared capture loop machinery."""

import threading
import time

from recorder.models import RecordKind
from recorder.scheduler import CaptureLoop, run_with_timeout


class CountingLoop(CaptureLoop):
    name = "counting"
    kind = RecordKind.INSIGHT
    config_section = "screenshots"
    default_interval_ms = 5000

    def __init__(self, storage, config_manager, fail_first=False, block=None):
        super().__init__(storage, config_manager)
        self.ticks = 0
        self.flushes = 0
        self.fail_first = fail_first
        self.block = block
        self.in_tick = threading.Event()

    def _tick(self):
        self.ticks += 1
        block = self.block
        if block is not None:
            self.in_tick.set()
            block.wait(5)
        if self.fail_first and self.ticks == 1:
            raise RuntimeError("boom")

    def _flush(self):
        self.flushes += 1


class SlowFlushLoop(CountingLoop):
    def _flush(self):
        time.sleep(2)


class TestCaptureLoop:

    def test_tick_error_is_contained(self, storage, config_manager):
        loop = CountingLoop(storage, config_manager, fail_first=True)
        assert loop.tick_once() is False
        assert loop.tick_once() is True
        assert loop.ticks == 2

    def test_overlapping_tick_is_skipped(self, storage, config_manager):
        release = threading.Event()
        loop = CountingLoop(storage, config_manager, block=release)

        worker = threading.Thread(target=loop.tick_once)
        worker.start()
        while loop.ticks == 0:
            time.sleep(0.01)

        assert loop.tick_once() is False
        release.set()
        worker.join(5)
        assert loop.ticks == 1

    def test_start_is_idempotent_and_stop_flushes(self, storage, config_manager):
        loop = CountingLoop(storage, config_manager)
        assert loop.start(60000) is True
        assert loop.start(60000) is False
        assert loop.ticks == 1
        assert loop.is_active()

        assert loop.stop() is True
        assert loop.flushes == 1
        assert not loop.is_active()
        assert loop.stop() is True
        assert loop.flushes == 1

    def test_invalid_interval_falls_back_to_configured(self, storage, config_manager):
        config_manager.config.screenshots.interval_ms = 1234
        loop = CountingLoop(storage, config_manager)

        loop.start(-5)
        assert loop.interval_ms == 1234
        loop.stop()

        loop.start("abc")
        assert loop.interval_ms == 1234
        loop.stop()

        config_manager.config.screenshots.interval_ms = 0
        loop.start()
        assert loop.interval_ms == 5000
        loop.stop()

    def test_loop_ticks_on_schedule(self, storage, config_manager):
        loop = CountingLoop(storage, config_manager)
        loop.start(20)
        deadline = time.monotonic() + 5
        while loop.ticks < 4 and time.monotonic() < deadline:
            time.sleep(0.01)
        loop.stop()
        assert loop.ticks >= 4

    def test_flush_timeout_reports_failure(self, storage, config_manager):
        loop = SlowFlushLoop(storage, config_manager)
        loop.start(60000)
        assert loop.stop(timeout=0.1) is False
        assert not loop.is_active()


def loop_threads(name):
    return [t for t in threading.enumerate() if t.name == f"{name}-loop" and t.is_alive()]


def wait_until(condition, seconds=5):
    deadline = time.monotonic() + seconds
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)
    return condition()


class TestStopRestart:

    def test_restart_after_timed_out_stop(self, storage, config_manager):
        """A hung run abandoned by stop() must not tick or flush for the next run."""
        release = threading.Event()
        loop = CountingLoop(storage, config_manager)
        try:
            loop.start(20)
            loop.block = release
            assert loop.in_tick.wait(5)

            started = time.monotonic()
            assert loop.stop(timeout=0.2) is False
            assert time.monotonic() - started < 1.5

            loop.block = None
            assert loop.start(60000) is True
        finally:
            release.set()

        assert wait_until(lambda: len(loop_threads("counting")) == 1)
        time.sleep(0.1)
        ticks = loop.ticks
        time.sleep(0.2)
        assert loop.ticks == ticks
        assert loop.flushes == 0

        assert loop.stop() is True
        assert loop.flushes == 1
        assert wait_until(lambda: not loop_threads("counting"))

    def test_stop_from_other_thread_during_tick(self, storage, config_manager):
        release = threading.Event()
        loop = CountingLoop(storage, config_manager)
        results = []
        try:
            loop.start(20)
            loop.block = release
            assert loop.in_tick.wait(5)

            stopper = threading.Thread(target=lambda: results.append(loop.stop(timeout=5)))
            stopper.start()
            assert wait_until(lambda: not loop.is_active())
            assert loop.flushes == 0
        finally:
            release.set()

        stopper.join(5)
        assert results == [True]
        assert loop.flushes == 1
        assert wait_until(lambda: not loop_threads("counting"))


class TestRunWithTimeout:

    def test_success(self):
        calls = []
        assert run_with_timeout(lambda: calls.append(1), 1.0, "test") is True
        assert calls == [1]

    def test_error_is_reported(self):
        def fail():
            raise OSError("disk full")
        assert run_with_timeout(fail, 1.0, "test") is False
