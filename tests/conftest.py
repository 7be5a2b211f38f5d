"""Shared fixtures: temporary store and config, a controllable clock and
fake capture primitives. Nothing here touches a real display, microphone,
window system, browser or network."""

import io
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from dateutil import tz
from PIL import Image

from recorder.config import ConfigManager
from recorder.models import RecordKind
from recorder.service import RecorderService
from recorder.storage import ActivityStorage


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, moment):
        self.now = moment
        return self.now


def gradient_png(reverse=False, width=170, height=32):
    """PNG with a horizontal gray gradient; reversing it flips every dhash bit."""
    img = Image.new("L", (width, height))
    row = [x * 255 // (width - 1) for x in range(width)]
    if reverse:
        row = row[::-1]
    img.putdata(row * height)
    buffer = io.BytesIO()
    img.convert("RGB").save(buffer, format="PNG")
    return buffer.getvalue()


class FakeGrabber:
    """Returns queued frames in order."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.display_info = {"monitor": 1, "width": 170, "height": 32}
        self.calls = 0

    def grab(self):
        self.calls += 1
        if not self.frames:
            raise RuntimeError("no frame queued")
        return self.frames.pop(0)


class FakeWindowProvider:
    def __init__(self):
        self.window = None
        self.error = None

    def __call__(self):
        if self.error is not None:
            raise self.error
        return self.window


class FakeProbe:
    def __init__(self):
        self.state = None

    def __call__(self):
        return self.state


class FakeStream:
    """Stands in for sounddevice.InputStream; tests push blocks through it."""

    def __init__(self, samplerate, channels, blocksize, device, callback):
        self.samplerate = samplerate
        self.channels = channels
        self.blocksize = blocksize
        self.device = device
        self.callback = callback
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def push(self, level, blocks=1):
        """Deliver ``blocks`` int16 blocks at constant normalized ``level``."""
        value = int(level * 32767)
        for _ in range(blocks):
            block = np.full((self.blocksize, self.channels), value, dtype=np.int16)
            self.callback(block, self.blocksize, None, None)


class StreamFactory:
    def __init__(self):
        self.streams = []

    def __call__(self, **kwargs):
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream

    @property
    def last(self):
        return self.streams[-1]


class FakeAI:
    """AI capability with canned answers; empty strings simulate failures."""

    def __init__(self, description="A code editor", transcript="hello world", summary="Busy day"):
        self.description = description
        self.transcript = transcript
        self.summary = summary
        self.bundles = []

    def describe_image(self, path):
        return self.description

    def transcribe(self, path):
        return self.transcript

    def summarize(self, bundle):
        self.bundles.append(bundle)
        return self.summary


class FakeLoop:
    """Capture loop double with the start/stop/is_active/get_recent surface."""

    def __init__(self, storage=None, kind=None, start_error=None, flush_ok=True):
        self.storage = storage
        self.kind = kind
        self.start_error = start_error
        self.flush_ok = flush_ok
        self.active = False
        self.intervals = []

    def start(self, interval_ms=None):
        if self.start_error is not None:
            raise self.start_error
        self.intervals.append(interval_ms)
        if self.active:
            return False
        self.active = True
        return True

    def stop(self, timeout=None):
        self.active = False
        return self.flush_ok

    def is_active(self):
        return self.active

    def get_recent(self, limit=50):
        return self.storage.find(self.kind, limit=limit)


@pytest.fixture
def fake_loops(storage):
    return {
        "screenshots": FakeLoop(storage, RecordKind.SCREENSHOT),
        "audio": FakeLoop(storage, RecordKind.AUDIO),
        "app_monitor": FakeLoop(storage, RecordKind.APP),
        "web_history": FakeLoop(storage, RecordKind.WEB),
    }


@pytest.fixture
def service(storage, config_manager, fake_ai, fake_loops):
    return RecorderService(storage, config_manager, ai_client=fake_ai, loops=fake_loops, tz=tz.UTC)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_manager(tmp_path):
    manager = ConfigManager(tmp_path / "config.yaml")
    manager.config.storage.data_dir = str(tmp_path / "data")
    manager.config.storage.flush_timeout_seconds = 2.0
    manager.config.audio.sample_rate = 8000
    manager.config.audio.chunk_ms = 100
    return manager


@pytest.fixture
def storage(tmp_path):
    return ActivityStorage(tmp_path / "data" / "activity.db")


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def stream_factory():
    return StreamFactory()
