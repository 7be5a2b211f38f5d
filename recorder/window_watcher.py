"""
Window focus tracking with duration measurement.

Uses xdotool/xprop to detect the focused window and turns focus changes
into AppUsage sessions. A session is closed when the app name or window
title changes, when focus is lost, or when the loop stops; sessions shorter
than the configured minimum are discarded.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from .config import DEFAULT_APP_MONITOR_INTERVAL_MS, clamp
from .errors import CaptureUnavailable
from .models import RecordKind
from .scheduler import CaptureLoop
from .sessions import ClosedSession, SessionTracker

logger = logging.getLogger(__name__)


@dataclass
class ActiveWindow:
    """The window that currently has keyboard focus."""
    app_name: str
    window_title: str
    window_class: str = ""
    window_pid: Optional[int] = None


def _xdotool(*args: str) -> str:
    return subprocess.check_output(
        ['xdotool', *args],
        stderr=subprocess.DEVNULL,
        timeout=1
    ).decode(errors='replace').strip()


def get_active_window() -> Optional[ActiveWindow]:
    """Get active window info using xdotool and xprop.

    Returns:
        The focused window, or None when nothing has focus.

    Raises:
        CaptureUnavailable: If xdotool is not installed or the X server does
            not answer in time
    """
    if shutil.which('xdotool') is None:
        raise CaptureUnavailable("xdotool not found; install it to track window focus")

    try:
        window_id = _xdotool('getactivewindow')
    except subprocess.CalledProcessError:
        return None  # no focused window
    except subprocess.TimeoutExpired as e:
        raise CaptureUnavailable("xdotool timed out querying the active window") from e

    if not window_id:
        return None

    try:
        window_name = _xdotool('getwindowname', window_id)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
        return None  # window vanished between calls

    window_pid = None
    try:
        pid_output = _xdotool('getwindowpid', window_id)
        if pid_output:
            window_pid = int(pid_output)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, ValueError):
        pass  # Some windows don't have PIDs

    # Parse WM_CLASS = "instance", "class"
    app_name = "Unknown"
    window_class = ""
    try:
        xprop_output = subprocess.check_output(
            ['xprop', '-id', window_id, 'WM_CLASS'],
            stderr=subprocess.DEVNULL,
            timeout=1
        ).decode(errors='replace').strip()
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        logger.debug(f"xprop failed for window {window_id}: {e}")
        xprop_output = ""

    if 'WM_CLASS' in xprop_output and '=' in xprop_output:
        parts = xprop_output.split('=', 1)[1].strip()
        classes = [c.strip().strip('"') for c in parts.split(',')]
        if len(classes) >= 2:
            window_class = classes[0]
            app_name = classes[1]
        elif classes:
            app_name = classes[0]

    return ActiveWindow(
        app_name=app_name,
        window_title=window_name,
        window_class=window_class,
        window_pid=window_pid,
    )


class AppMonitor(CaptureLoop):
    """Track application focus sessions.

    Usage:
        monitor = AppMonitor(storage, config_manager)
        monitor.start(1000)
        ...
        monitor.stop()
    """

    name = "app_monitor"
    kind = RecordKind.APP
    config_section = "app_monitor"
    default_interval_ms = DEFAULT_APP_MONITOR_INTERVAL_MS

    def __init__(self, storage, config_manager=None, window_provider=None, clock=None):
        """
        Args:
            storage: Record store
            config_manager: Source of the app_monitor and privacy sections
            window_provider: Callable returning the focused window or None
                (defaults to xdotool/xprop)
            clock: Callable returning the current aware datetime
        """
        super().__init__(storage, config_manager, clock)
        self.window_provider = window_provider or get_active_window
        self.sessions = SessionTracker(('app_name', 'window_title'))
        self.excluded_apps = set()

    def _prepare(self):
        settings = super()._prepare()
        settings.min_duration_ms = int(clamp(settings.min_duration_ms, 0, 3_600_000, 500))
        self.excluded_apps = {
            app.strip().lower() for app in self.config_manager.config.privacy.excluded_apps if app
        }
        return settings

    def current_window(self) -> Optional[ActiveWindow]:
        """The window of the open session, if any."""
        session = self.sessions.current
        return session.entity if session else None

    def _tick(self) -> None:
        if self.settings is None:
            self.settings = self._prepare()

        window = self.window_provider()
        closed = self.sessions.observe(window, self.clock())
        if closed is not None:
            self._save(closed)

    def _flush(self) -> None:
        closed = self.sessions.close(self.clock())
        if closed is not None:
            self._save(closed)

    def _save(self, session: ClosedSession) -> None:
        window = session.entity
        elapsed = session.duration_seconds

        if elapsed * 1000 < self.settings.min_duration_ms:
            logger.debug(f"Discarding {elapsed:.2f}s focus session for {window.app_name}")
            return
        if window.app_name.lower() in self.excluded_apps:
            logger.debug(f"Not recording focus session for excluded app {window.app_name}")
            return

        self.storage.create(RecordKind.APP, {
            "timestamp": session.start_time,
            "app_name": window.app_name,
            "window_title": window.window_title,
            "start_time": session.start_time,
            "end_time": session.end_time,
            "duration": int(elapsed),
            "metadata": {
                "windowClass": window.window_class,
                "pid": window.window_pid,
            },
        })
        logger.debug(f"Saved focus session: {window.app_name} ({elapsed:.1f}s)")
