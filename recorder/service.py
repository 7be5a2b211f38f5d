"""Service facade exposed to the daemon and the JSON API.

Every public method returns a ``Result`` envelope and never raises: errors
from the loops, the store and input validation are logged and converted to
``Result(success=False, error=..., code=<exception class>)``.
"""

import logging
from datetime import tzinfo
from typing import Callable, Dict, Iterable, Optional

from . import insights, retention, timeline
from .ai import OllamaClient
from .ai_worker import AIWorker
from .audio import AudioRecorder
from .capture import ScreenshotLoop
from .config import ConfigManager, get_config_manager, positive_int
from .errors import NotFound, RecorderError
from .models import RecordKind, Result, TimelineItem
from .storage import ActivityStorage
from .web_history import WebHistoryTracker
from .window_watcher import AppMonitor

logger = logging.getLogger(__name__)

LOOP_NAMES = ("screenshots", "audio", "app_monitor", "web_history")

_LOOP_ALIASES = {
    "screenshot": "screenshots",
    "screenshots": "screenshots",
    "audio": "audio",
    "app": "app_monitor",
    "app_monitor": "app_monitor",
    "web": "web_history",
    "web_history": "web_history",
}


def _call(label: str, func: Callable, *args, **kwargs) -> Result:
    try:
        return Result.ok(func(*args, **kwargs))
    except (RecorderError, ValueError) as e:
        logger.warning(f"{label} failed: {e}")
        return Result.fail(e)
    except Exception as e:
        logger.exception(f"{label} failed unexpectedly")
        return Result.fail(e)


class RecorderService:
    """Owns the capture loops, the AI worker and the record store.

    Attributes:
        storage: Record store shared by all loops
        config_manager: Configuration source
        loops: Capture loops keyed by name (screenshots, audio, app_monitor, web_history)
        ai_worker: Background AI post-processing worker
    """

    def __init__(
        self,
        storage: ActivityStorage,
        config_manager: Optional[ConfigManager] = None,
        ai_client=None,
        ai_worker: Optional[AIWorker] = None,
        loops: Optional[Dict[str, object]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.storage = storage
        self.config_manager = config_manager or get_config_manager()
        self.ai_client = ai_client or OllamaClient(self.config_manager.config.ai)
        self.ai_worker = ai_worker or AIWorker(storage, self.config_manager, client=self.ai_client)
        self.tz = tz

        loops = dict(loops or {})
        self.loops = {
            "screenshots": loops.get("screenshots") or ScreenshotLoop(
                storage, self.config_manager, ai_worker=self.ai_worker),
            "audio": loops.get("audio") or AudioRecorder(
                storage, self.config_manager, ai_worker=self.ai_worker),
            "app_monitor": loops.get("app_monitor") or AppMonitor(storage, self.config_manager),
            "web_history": loops.get("web_history") or WebHistoryTracker(storage, self.config_manager),
        }

    @classmethod
    def from_config(cls, config_manager: Optional[ConfigManager] = None) -> "RecorderService":
        """Build a service whose database lives in the configured data directory."""
        config_manager = config_manager or get_config_manager()
        storage = ActivityStorage(config_manager.config.storage.data_path / "activity.db")
        return cls(storage, config_manager)

    # =========================================================================
    # Loops
    # =========================================================================

    def _loop(self, name: str):
        key = _LOOP_ALIASES.get(str(name).strip().lower())
        if key is None:
            raise ValueError(f"Unknown capture loop {name!r} (expected one of: {', '.join(LOOP_NAMES)})")
        return key, self.loops[key]

    def start_loop(self, name: str, interval_ms=None) -> Result:
        """Start one capture loop; starting a running polling loop is a no-op."""
        def start():
            key, loop = self._loop(name)
            started = loop.start(interval_ms)
            return {"loop": key, "active": loop.is_active(), "alreadyRunning": not started}
        return _call(f"start {name}", start)

    def stop_loop(self, name: str) -> Result:
        """Stop one capture loop, flushing its open session.

        The loop is idle afterwards even when the flush failed; the failure is
        reported in the envelope.
        """
        try:
            key, loop = self._loop(name)
        except ValueError as e:
            return Result.fail(e)

        try:
            flushed = loop.stop()
        except Exception as e:
            logger.exception(f"stop {key} failed")
            return Result.fail(e, data={"loop": key, "active": loop.is_active()})

        data = {"loop": key, "active": loop.is_active()}
        if not flushed:
            return Result(success=False, data=data,
                          error=f"{key} stopped but its final session could not be saved",
                          code="StorageFailure")
        return Result.ok(data)

    def loop_status(self) -> Result:
        return _call("loop status", lambda: {
            "loops": {name: loop.is_active() for name, loop in self.loops.items()},
            "ai": self.ai_worker.get_status(),
        })

    def get_recent(self, name: str, limit: int = 50) -> Result:
        def recent():
            _, loop = self._loop(name)
            return loop.get_recent(positive_int(limit, 50))
        return _call(f"recent {name}", recent)

    def start_enabled(self) -> Result:
        """Start the AI worker and every loop enabled in the configuration."""
        config = self.config_manager.config
        if config.ai.enabled:
            self.ai_worker.start()

        started, failed = [], {}
        for name in LOOP_NAMES:
            if not getattr(config, name).enabled:
                continue
            result = self.start_loop(name)
            if result.success:
                started.append(name)
            else:
                failed[name] = result.error
        data = {"started": started, "failed": failed}
        if failed and not started:
            return Result(success=False, data=data, error="No capture loop could be started")
        return Result.ok(data)

    def stop_all(self) -> Result:
        """Stop every running loop and the AI worker."""
        failed = {}
        for name in self.loops:
            result = self.stop_loop(name)
            if not result.success:
                failed[name] = result.error
        self.ai_worker.stop()
        if failed:
            return Result(success=False, data={"failed": failed}, error="Some loops lost their final session")
        return Result.ok({"failed": {}})

    # =========================================================================
    # Timeline
    # =========================================================================

    def get_timeline_for_date(self, day) -> Result:
        return _call("timeline", timeline.get_timeline_for_date, self.storage, day, self.tz)

    def get_timeline_range(self, start, end) -> Result:
        return _call("timeline range", timeline.get_timeline_range, self.storage, start, end, self.tz)

    def group_timeline_items(self, items: Iterable, group_by: str = timeline.GROUP_BY_HOUR) -> Result:
        def group():
            parsed = [i if isinstance(i, TimelineItem) else timeline.item_from_dict(i) for i in items]
            return timeline.group_timeline_items(parsed, group_by, self.tz)
        return _call("group timeline", group)

    def get_activity_summary(self, start, end) -> Result:
        return _call("activity summary", timeline.get_activity_summary, self.storage, start, end, self.tz)

    def get_app_usage_summary(self, start, end, limit: int = 10) -> Result:
        return _call("app usage summary", timeline.get_app_usage_summary,
                     self.storage, start, end, positive_int(limit, 10), self.tz)

    def get_website_summary(self, start, end, limit: int = 10) -> Result:
        return _call("website summary", timeline.get_website_summary,
                     self.storage, start, end, positive_int(limit, 10), self.tz)

    def get_daily_summary(self, day) -> Result:
        return _call("daily summary", timeline.get_daily_summary, self.storage, day, self.tz)

    def get_activity_counts(self) -> Result:
        return _call("activity counts", timeline.get_activity_counts, self.storage)

    # =========================================================================
    # Deletion
    # =========================================================================

    @staticmethod
    def _deletion_result(label: str, func: Callable, *args) -> Result:
        result = _call(label, func, *args)
        if not result.success:
            return result
        report = result.data
        if not report.ok:
            return Result(
                success=False,
                data=report.to_dict(),
                error=f"Deleted {report.deleted} record(s) but {len(report.file_errors)} file(s) could not be removed",
                code="StorageFailure",
            )
        return Result.ok(report.to_dict())

    def delete_item(self, item_id: int, kind) -> Result:
        return self._deletion_result("delete item", retention.delete_item, self.storage, item_id, kind)

    def delete_items_by_type(self, day, kind) -> Result:
        return self._deletion_result(
            "delete by type", retention.delete_items_by_type, self.storage, day, kind, self.tz)

    def delete_all_items(self, day) -> Result:
        return self._deletion_result("delete all", retention.delete_all_items, self.storage, day, self.tz)

    def purge_older_than(self, days: Optional[int] = None) -> Result:
        if days is None:
            days = self.config_manager.config.storage.retention_days
        return self._deletion_result("purge", retention.purge_older_than, self.storage, int(days))

    # =========================================================================
    # Insights
    # =========================================================================

    def generate_insight(self, timeframe: str = "day") -> Result:
        def generate():
            if not self.config_manager.config.ai.enabled:
                raise ValueError("AI features are disabled in the configuration")
            return insights.generate_insight(self.storage, self.ai_client, timeframe)
        return _call("generate insight", generate)

    def get_recent_insights(self, limit: int = 10) -> Result:
        return _call("recent insights", insights.get_recent_insights, self.storage, positive_int(limit, 10))

    def process_screenshot(self, screenshot_id: int) -> Result:
        """Describe a screenshot now, replacing any earlier description."""
        return _call("process screenshot", self.ai_worker.process_now, RecordKind.SCREENSHOT, screenshot_id)

    def process_recording(self, recording_id: int) -> Result:
        """Transcribe a recording now, replacing any earlier transcript."""
        return _call("process recording", self.ai_worker.process_now, RecordKind.AUDIO, recording_id)

    def get_item(self, item_id: int, kind) -> Result:
        def find():
            parsed = RecordKind.parse(kind)
            record = self.storage.find_by_id(parsed, item_id)
            if record is None:
                raise NotFound(parsed.value, item_id)
            return record
        return _call("get item", find)

    # =========================================================================
    # Settings
    # =========================================================================

    def get_config(self) -> Result:
        return _call("get config", self.config_manager.to_dict)

    def update_config(self, section: str, key: str, value) -> Result:
        def update():
            if not self.config_manager.update(section, key, value):
                raise ValueError(f"Config {section}.{key} was not changed")
            return self.config_manager.to_dict()[section]
        return _call("update config", update)

    def get_setting(self, key: str) -> Result:
        return _call("get setting", self.storage.get_setting, key)

    def set_setting(self, key: str, value) -> Result:
        def set_value():
            self.storage.set_setting(key, value)
            return {key: value}
        return _call("set setting", set_value)
