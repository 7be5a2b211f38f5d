"""Screenshot Capture Loop.

This module grabs the desktop on a fixed cadence, suppresses visually
identical frames and persists the rest as compressed image files plus a
``Screenshot`` row.

The module handles:
- Monitor capture through MSS (returned as PNG bytes)
- Exact-match duplicate suppression against the last N perceptual hashes
- WebP/PNG/JPEG encoding into a YYYY/MM/DD directory structure
- Queueing an AI description for each new screenshot

Key Classes:
    ScreenGrabber: Capture primitive wrapping MSS
    ScreenshotLoop: The periodic capture loop

Example:
    >>> loop = ScreenshotLoop(storage, config_manager, ai_worker=worker)
    >>> loop.start(10000)
    >>> loop.stop()
"""

import io
import logging
from collections import deque
from datetime import datetime
from typing import Deque, Optional

import mss
import mss.tools
from mss.exception import ScreenShotError
from PIL import Image

from .config import DEFAULT_SCREENSHOT_INTERVAL_MS, clamp
from .dedup import image_similarity
from .errors import CaptureUnavailable
from .files import dated_dir, write_atomically
from .models import RecordKind, Screenshot
from .scheduler import CaptureLoop

logger = logging.getLogger(__name__)

_FORMATS = {
    "webp": ("WEBP", "webp"),
    "png": ("PNG", "png"),
    "jpeg": ("JPEG", "jpg"),
    "jpg": ("JPEG", "jpg"),
}

MAX_DEDUP_HISTORY = 10


class ScreenGrabber:
    """Captures one monitor with MSS.

    Attributes:
        monitor: MSS monitor index (0 = all monitors combined, 1 = primary)
        display_info: Geometry of the last captured monitor
    """

    def __init__(self, monitor: int = 1):
        self.monitor = monitor
        self.display_info: Optional[dict] = None

    def grab(self) -> bytes:
        """Capture the configured monitor.

        Returns:
            PNG-encoded screenshot bytes.

        Raises:
            CaptureUnavailable: If no display server or monitor is reachable
        """
        try:
            with mss.mss() as sct:
                if len(sct.monitors) < 2:
                    raise CaptureUnavailable("No monitors detected")
                index = self.monitor if 0 <= self.monitor < len(sct.monitors) else 1
                monitor = sct.monitors[index]
                shot = sct.grab(monitor)
                self.display_info = {
                    "monitor": index,
                    "left": monitor["left"],
                    "top": monitor["top"],
                    "width": monitor["width"],
                    "height": monitor["height"],
                    "monitorCount": len(sct.monitors) - 1,
                }
                return mss.tools.to_png(shot.rgb, shot.size)
        except ScreenShotError as e:
            raise CaptureUnavailable(f"Cannot capture screen. Is a display server running? ({e})") from e


class ScreenshotLoop(CaptureLoop):
    """Periodic screenshot capture with duplicate suppression.

    A frame whose hash is among the last ``dedup_history`` persisted hashes
    is discarded without writing anything. A hash enters the ring only once
    its screenshot has been persisted, so a failed write never suppresses the
    next identical frame.
    """

    name = "screenshot"
    kind = RecordKind.SCREENSHOT
    config_section = "screenshots"
    default_interval_ms = DEFAULT_SCREENSHOT_INTERVAL_MS

    def __init__(self, storage, config_manager=None, grabber=None, ai_worker=None, clock=None):
        super().__init__(storage, config_manager, clock)
        self.grabber = grabber
        self.ai_worker = ai_worker
        self.recent_hashes: Deque[str] = deque(maxlen=MAX_DEDUP_HISTORY)

    def _prepare(self):
        settings = super()._prepare()

        settings.format = str(settings.format).lower()
        if settings.format not in _FORMATS:
            logger.warning(f"Unsupported screenshot format {settings.format!r}, using webp")
            settings.format = "webp"
        settings.quality = int(clamp(settings.quality, 1, 100, 80))
        settings.dedup_history = int(clamp(settings.dedup_history, 1, MAX_DEDUP_HISTORY, MAX_DEDUP_HISTORY))

        if self.recent_hashes.maxlen != settings.dedup_history:
            self.recent_hashes = deque(self.recent_hashes, maxlen=settings.dedup_history)
        if self.grabber is None:
            self.grabber = ScreenGrabber(settings.monitor)
        return settings

    def _tick(self) -> None:
        if self.settings is None:
            self.settings = self._prepare()

        now = self.clock()
        image_bytes = self.grabber.grab()
        result = image_similarity(image_bytes, self.recent_hashes)
        if result.is_duplicate:
            logger.debug(f"Screenshot unchanged (hash {result.new_hash[:12]}), skipping")
            return

        screenshot = self._persist(image_bytes, result.new_hash, now)
        self.recent_hashes.append(result.new_hash)
        logger.info(f"Screenshot saved: {screenshot.path}")

        if self.ai_worker is not None and self.settings.describe_with_ai:
            self.ai_worker.describe_screenshot(screenshot.id, screenshot.path)

    def _persist(self, image_bytes: bytes, image_hash: str, now: datetime) -> Screenshot:
        pil_format, extension = _FORMATS[self.settings.format]

        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            image = img.convert("RGB") if pil_format != "PNG" else img.copy()

        directory = dated_dir(self.config_manager.config.storage.data_path / "screenshots", now)
        filename = f"{now.astimezone():%Y%m%d_%H%M%S}_{image_hash[:8]}.{extension}"
        path = directory / filename

        def writer(f):
            if pil_format == "PNG":
                image.save(f, "PNG", optimize=True)
            elif pil_format == "WEBP":
                image.save(f, "WEBP", quality=self.settings.quality, method=6)
            else:
                image.save(f, "JPEG", quality=self.settings.quality, optimize=True)

        size = write_atomically(path, writer)

        try:
            return self.storage.create(RecordKind.SCREENSHOT, {
                "timestamp": now,
                "path": str(path),
                "metadata": {
                    "width": image.width,
                    "height": image.height,
                    "format": self.settings.format,
                    "size": size,
                    "hash": image_hash,
                    "displayInfo": getattr(self.grabber, "display_info", None),
                },
            })
        except Exception:
            path.unlink(missing_ok=True)
            raise
