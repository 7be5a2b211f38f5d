"""Background worker for AI post-processing.

Capture loops hand finished records to this worker and return immediately:
screenshots get a text description, recordings get a transcript. Jobs run on
one background thread, are never retried automatically, and are dropped
(with a warning) when the queue is full, so a slow or failing provider can
never block capture.
"""

import dataclasses
import logging
import queue
import threading
from typing import Dict, Optional, TYPE_CHECKING

from .errors import NotFound, RecorderError
from .models import RecordKind

if TYPE_CHECKING:
    from .ai import OllamaClient
    from .config import ConfigManager
    from .storage import ActivityStorage

logger = logging.getLogger(__name__)

DESCRIBE = 'describe'
TRANSCRIBE = 'transcribe'

_FIELDS = {
    RecordKind.SCREENSHOT: (DESCRIBE, 'text_description'),
    RecordKind.AUDIO: (TRANSCRIBE, 'transcript'),
}


class AIWorker:
    """Queue-backed worker that fills in descriptions and transcripts.

    Attributes:
        storage: ActivityStorage instance the results are written to
        config: ConfigManager instance for the ``ai`` section
    """

    def __init__(self, storage: "ActivityStorage", config: "ConfigManager",
                 client: Optional["OllamaClient"] = None):
        self.storage = storage
        self.config = config
        self._client = client
        self._client_config = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._pending_queue: queue.Queue = queue.Queue(maxsize=max(1, int(config.config.ai.queue_size)))
        self._current_task: Optional[str] = None
        self.processed = 0
        self.dropped = 0

    @property
    def client(self) -> "OllamaClient":
        """Lazy-load the provider client, recreating it if the ai section changed."""
        current = self.config.config.ai
        if self._client is None or (self._client_config is not None and self._client_config != current):
            from .ai import OllamaClient
            logger.info(f"Creating AI client for {current.ollama_host}")
            self._client = OllamaClient(current)
            self._client_config = dataclasses.replace(current)
        return self._client

    def start(self):
        """Start the background worker thread."""
        if self._running:
            logger.warning("AIWorker already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name="ai-worker", daemon=True)
        self._thread.start()
        logger.info("AIWorker started")

    def stop(self, timeout: float = 5.0):
        """Stop the background worker thread; queued jobs are abandoned."""
        if not self._running:
            return

        self._running = False
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        pending = self._pending_queue.qsize()
        if pending:
            logger.info(f"AIWorker stopped with {pending} job(s) still queued")
        logger.info("AIWorker stopped")

    def describe_screenshot(self, screenshot_id: int, path: str) -> bool:
        return self._submit(DESCRIBE, screenshot_id, path)

    def transcribe_recording(self, recording_id: int, path: str) -> bool:
        return self._submit(TRANSCRIBE, recording_id, path)

    def process_now(self, kind, record_id: int):
        """Describe or transcribe one record on the calling thread.

        Used for manual re-processing: any existing description or
        transcript is overwritten.

        Returns:
            The updated record.

        Raises:
            ValueError: If AI is disabled or ``kind`` has nothing to process
            NotFound: If the record does not exist
            RecorderError: If the provider returned no text
        """
        kind = RecordKind.parse(kind)
        if kind not in _FIELDS:
            raise ValueError(f"{kind.value} records have no AI processing")
        if not self.config.config.ai.enabled:
            raise ValueError("AI features are disabled in the configuration")

        record = self.storage.find_by_id(kind, record_id)
        if record is None:
            raise NotFound(kind.value, record_id)

        task_type, field = _FIELDS[kind]
        self._current_task = task_type
        try:
            if task_type == DESCRIBE:
                text = self.client.describe_image(record.path)
            else:
                text = self.client.transcribe(record.path)
        finally:
            self._current_task = None
        if not text:
            raise RecorderError(f"AI provider returned no {field} for {kind.value} {record_id}")

        self.processed += 1
        logger.info(f"Re-processed {kind.value} {record_id} ({task_type})")
        return self.storage.update(kind, record_id, {field: text})

    def run_pending(self) -> int:
        """Process every queued job on the calling thread.

        Returns:
            Number of jobs processed.
        """
        count = 0
        while True:
            try:
                task = self._pending_queue.get_nowait()
            except queue.Empty:
                return count
            self._process(task)
            count += 1

    def get_status(self) -> Dict:
        """Running state, current task, queue size and counters."""
        return {
            "running": self._running,
            "current_task": self._current_task,
            "queue_size": self._pending_queue.qsize(),
            "processed": self.processed,
            "dropped": self.dropped,
        }

    def _submit(self, task_type: str, record_id: int, path: str) -> bool:
        if not self.config.config.ai.enabled:
            logger.debug(f"AI disabled, not queueing {task_type} for {record_id}")
            return False
        try:
            self._pending_queue.put_nowait((task_type, record_id, path))
        except queue.Full:
            self.dropped += 1
            logger.warning(f"AI queue full, dropping {task_type} job for record {record_id}")
            return False
        logger.debug(f"Queued {task_type} job for record {record_id}")
        return True

    def _run_loop(self):
        """Background loop processing the job queue."""
        while self._running:
            try:
                task = self._pending_queue.get(timeout=1)
            except queue.Empty:
                continue
            self._process(task)

    def _process(self, task):
        task_type, record_id, path = task
        self._current_task = task_type
        try:
            if task_type == DESCRIBE:
                text = self.client.describe_image(path)
                if text:
                    self.storage.update(RecordKind.SCREENSHOT, record_id, {"text_description": text})
            elif task_type == TRANSCRIBE:
                text = self.client.transcribe(path)
                if text:
                    self.storage.update(RecordKind.AUDIO, record_id, {"transcript": text})
            self.processed += 1
        except NotFound:
            logger.debug(f"Record {record_id} was deleted before {task_type} finished")
        except Exception as e:
            logger.error(f"AI {task_type} job for record {record_id} failed: {e}", exc_info=True)
        finally:
            self._current_task = None
