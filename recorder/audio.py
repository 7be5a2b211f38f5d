"""Microphone recording with silence/speech segmentation.

Unlike the polling loops, audio is one continuous session bounded by
``start()`` and ``stop()``. Each input block is appended to a WAV file and
its RMS energy is fed to a ``SpeechSegmenter``. On stop the file is
finalized, an ``AudioRecording`` row is created with the accumulated
silence markers and speech segments, and a transcription job is queued.

The microphone is an exclusive resource: calling ``start()`` while a session
is open finalizes that session in the background, starts a fresh one
afterwards, and raises ``AlreadyRecording`` to the caller meanwhile.
"""

import copy
import logging
import os
import threading
import wave
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Callable, List, Optional

from .config import ConfigManager, clamp, get_config_manager, positive_int
from .dedup import SpeechSegmenter, energy_level
from .errors import AlreadyRecording, CaptureUnavailable, StorageFailure
from .files import dated_dir
from .models import AudioRecording, Record, RecordKind
from .scheduler import run_with_timeout, utcnow

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # int16


def open_input_stream(samplerate: int, channels: int, blocksize: int, device, callback):
    """Default stream factory: an int16 ``sounddevice.InputStream``.

    Raises:
        CaptureUnavailable: If PortAudio or the input device is unavailable
    """
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        raise CaptureUnavailable(f"sounddevice/PortAudio is required for recording: {exc}") from exc

    try:
        return sd.InputStream(
            samplerate=samplerate,
            channels=channels,
            dtype="int16",
            blocksize=blocksize,
            device=device,
            callback=callback,
        )
    except (sd.PortAudioError, ValueError) as exc:
        raise CaptureUnavailable(f"Microphone unavailable: {exc}") from exc


@dataclass
class _Session:
    path: Path
    partial_path: Path
    handle: BinaryIO
    wav: Any
    segmenter: SpeechSegmenter
    started_at: datetime
    sample_rate: int
    channels: int
    stream: Any = None
    frames: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


class AudioRecorder:
    """Continuous microphone recording session."""

    name = "audio"
    kind = RecordKind.AUDIO

    def __init__(
        self,
        storage,
        config_manager: Optional[ConfigManager] = None,
        stream_factory: Optional[Callable] = None,
        ai_worker=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.config_manager = config_manager or get_config_manager()
        self.stream_factory = stream_factory or open_input_stream
        self.ai_worker = ai_worker
        self.clock = clock or utcnow
        self.settings = None

        self._lock = threading.RLock()
        self._session: Optional[_Session] = None
        self._wanted = False
        self._restart_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval_ms=None) -> bool:
        """Open the microphone and begin a recording.

        ``interval_ms`` is accepted for symmetry with the polling loops and
        ignored; audio is recorded continuously.

        Raises:
            AlreadyRecording: A session was open; it is being finalized and a
                new one will start once it is
            CaptureUnavailable: The microphone could not be opened
        """
        with self._lock:
            if self._session is not None:
                old = self._session
                self._session = None
                self._wanted = True
                self._restart_thread = threading.Thread(
                    target=self._restart_after, args=(old,), name="audio-restart", daemon=True
                )
                self._restart_thread.start()
                raise AlreadyRecording(
                    "Microphone busy: finalizing the current recording, a new one starts when it is done"
                )
            if self._restart_thread is not None and self._restart_thread.is_alive():
                raise AlreadyRecording("Previous recording is still being finalized")

            self._wanted = True
            try:
                self._open_session()
            except Exception:
                self._wanted = False
                raise
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Finalize the current recording.

        Returns:
            True if the recording was saved (or none was open), False if
            finalizing failed or timed out; the recorder is idle either way.
        """
        if timeout is None:
            timeout = self.config_manager.config.storage.flush_timeout_seconds

        with self._lock:
            self._wanted = False
            session = self._session
            self._session = None
            restart = self._restart_thread

        if restart is not None and restart is not threading.current_thread():
            restart.join(timeout)

        if session is None:
            return True
        return run_with_timeout(lambda: self._finalize(session), timeout, self.name)

    def is_active(self) -> bool:
        return self._session is not None

    def get_recent(self, limit: int = 50) -> List[Record]:
        return self.storage.find(self.kind, limit=positive_int(limit, 50))

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    def _prepare(self):
        """Snapshot and validate the audio section."""
        settings = copy.deepcopy(self.config_manager.config.audio)
        settings.sample_rate = positive_int(settings.sample_rate, 44100)
        settings.channels = int(clamp(settings.channels, 1, 2, 1))
        settings.chunk_ms = int(clamp(settings.chunk_ms, 10, 1000, 100))
        settings.silence_threshold = clamp(settings.silence_threshold, 0.0, 1.0, 0.05)
        settings.max_silence_ms = int(clamp(settings.max_silence_ms, 0, 600_000, 3000))
        settings.min_speech_ms = int(clamp(settings.min_speech_ms, 0, 600_000, 500))
        settings.max_speech_ms = int(clamp(settings.max_speech_ms, 1000, 3_600_000, 30000))
        if settings.max_speech_ms < settings.min_speech_ms:
            settings.max_speech_ms = settings.min_speech_ms
        return settings

    def _open_session(self) -> None:
        self.settings = self._prepare()
        started_at = self.clock()

        directory = dated_dir(self.config_manager.config.storage.data_path / "audio", started_at)
        stem = f"{started_at.astimezone():%Y%m%d_%H%M%S}"
        path = directory / f"{stem}.wav"
        counter = 1
        while path.exists() or path.with_name(f".{path.name}.part").exists():
            path = directory / f"{stem}_{counter}.wav"
            counter += 1
        partial = path.with_name(f".{path.name}.part")

        try:
            handle = open(partial, "wb")
        except OSError as e:
            raise StorageFailure(f"Cannot create audio file {partial}: {e}") from e
        wav = wave.open(handle, "wb")
        wav.setnchannels(self.settings.channels)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(self.settings.sample_rate)

        session = _Session(
            path=path,
            partial_path=partial,
            handle=handle,
            wav=wav,
            segmenter=SpeechSegmenter(
                threshold=self.settings.silence_threshold,
                max_silence=self.settings.max_silence_ms / 1000.0,
                min_speech=self.settings.min_speech_ms / 1000.0,
                max_speech=self.settings.max_speech_ms / 1000.0,
            ),
            started_at=started_at,
            sample_rate=self.settings.sample_rate,
            channels=self.settings.channels,
        )

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"Audio input status: {status}")
            self._on_block(session, indata, frames)

        try:
            session.stream = self.stream_factory(
                samplerate=self.settings.sample_rate,
                channels=self.settings.channels,
                blocksize=int(self.settings.sample_rate * self.settings.chunk_ms / 1000),
                device=self.settings.device,
                callback=callback,
            )
            session.stream.start()
        except Exception:
            wav.close()
            handle.close()
            partial.unlink(missing_ok=True)
            raise

        self._session = session
        logger.info(f"Audio recording started: {path}")

    def _on_block(self, session: _Session, indata, frames: int) -> None:
        with session.lock:
            if session.wav is None:
                return
            session.wav.writeframes(indata.tobytes())
            session.frames += frames
            if self.settings.silence_detection:
                session.segmenter.feed(energy_level(indata), frames / session.sample_rate)

    def _close_file(self, session: _Session) -> None:
        if session.stream is not None:
            try:
                session.stream.stop()
                session.stream.close()
            except Exception as e:
                logger.warning(f"Error closing audio stream: {e}")

        with session.lock:
            if session.wav is None:
                return
            session.wav.close()
            session.wav = None
            session.handle.flush()
            os.fsync(session.handle.fileno())
            session.handle.close()
            session.segmenter.finish()

    def _finalize(self, session: _Session) -> Optional[AudioRecording]:
        self._close_file(session)

        if session.frames == 0:
            logger.warning("Audio recording captured no samples, discarding it")
            session.partial_path.unlink(missing_ok=True)
            return None

        os.replace(session.partial_path, session.path)
        try:
            recording = self.storage.create(RecordKind.AUDIO, {
                "timestamp": session.started_at,
                "path": str(session.path),
                "duration": round(session.duration, 3),
                "metadata": {
                    "format": "wav",
                    "sampleRate": session.sample_rate,
                    "channels": session.channels,
                    "silenceMarkers": [s.to_dict() for s in session.segmenter.silence_markers],
                    "speechSegments": [s.to_dict() for s in session.segmenter.speech_segments],
                },
            })
        except Exception:
            session.path.unlink(missing_ok=True)
            raise

        logger.info(f"Audio recording saved: {session.path} ({session.duration:.1f}s)")
        if self.ai_worker is not None and self.settings.transcribe_with_ai:
            self.ai_worker.transcribe_recording(recording.id, recording.path)
        return recording

    def _restart_after(self, old: _Session) -> None:
        try:
            self._finalize(old)
        except Exception as e:
            logger.error(f"Failed to finalize previous audio recording (data loss): {e}")

        with self._lock:
            if not self._wanted or self._session is not None:
                return
            try:
                self._open_session()
            except Exception as e:
                self._wanted = False
                logger.error(f"Failed to restart audio recording: {e}")
