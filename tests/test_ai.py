"""Tests for the AI client and the post-processing worker."""

from unittest.mock import MagicMock

import pytest
import requests

from conftest import gradient_png
from recorder.ai import OllamaClient
from recorder.ai_worker import AIWorker
from recorder.config import AIConfig
from recorder.errors import NotFound, RecorderError
from recorder.models import RecordKind


def json_response(payload):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    return response


class TestOllamaClient:

    def test_describe_image_posts_to_chat(self, tmp_path):
        image = tmp_path / "shot.png"
        image.write_bytes(gradient_png())
        session = MagicMock()
        session.post.return_value = json_response({"message": {"content": "  Editing code  "}})

        client = OllamaClient(AIConfig(ollama_host="http://ollama:11434/"), session=session)
        assert client.describe_image(str(image)) == "Editing code"

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "http://ollama:11434/api/chat"
        assert payload["model"] == "llava"
        assert payload["stream"] is False
        assert len(payload["messages"][0]["images"]) == 1

    def test_describe_failure_returns_empty(self, tmp_path):
        image = tmp_path / "shot.png"
        image.write_bytes(gradient_png())
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        assert OllamaClient(AIConfig(), session=session).describe_image(str(image)) == ""

    def test_describe_missing_file_returns_empty(self, tmp_path):
        client = OllamaClient(AIConfig(), session=MagicMock())
        assert client.describe_image(str(tmp_path / "gone.png")) == ""

    def test_transcribe_without_endpoint(self, tmp_path):
        session = MagicMock()
        assert OllamaClient(AIConfig(), session=session).transcribe(str(tmp_path / "a.wav")) == ""
        session.post.assert_not_called()

    def test_transcribe_reads_text(self, tmp_path):
        audio = tmp_path / "a.wav"
        audio.write_bytes(b"RIFF")
        session = MagicMock()
        session.post.return_value = json_response({"text": "hello there"})

        config = AIConfig(transcription_url="http://whisper/v1/audio/transcriptions")
        assert OllamaClient(config, session=session).transcribe(str(audio)) == "hello there"
        assert session.post.call_args.kwargs["data"] == {"model": "whisper-1"}

    def test_summarize_malformed_response(self):
        session = MagicMock()
        session.post.return_value = json_response({"unexpected": True})
        client = OllamaClient(AIConfig(), session=session)
        assert client.summarize({"timeframe": "day"}) == ""

    def test_is_available(self):
        session = MagicMock()
        session.get.return_value = json_response({"models": [{"name": "llama3.2:latest"}]})
        assert OllamaClient(AIConfig(), session=session).is_available() is True

        session.get.return_value = json_response({"models": [{"name": "mistral"}]})
        assert OllamaClient(AIConfig(), session=session).is_available() is False


class TestAIWorker:

    def test_jobs_fill_in_text(self, storage, config_manager, fake_ai):
        shot = storage.create(RecordKind.SCREENSHOT, {"path": "/s.webp"})
        audio = storage.create(RecordKind.AUDIO, {"path": "/a.wav", "duration": 3.0})
        worker = AIWorker(storage, config_manager, client=fake_ai)

        assert worker.describe_screenshot(shot.id, shot.path)
        assert worker.transcribe_recording(audio.id, audio.path)
        assert worker.run_pending() == 2

        assert storage.find_by_id(RecordKind.SCREENSHOT, shot.id).text_description == "A code editor"
        assert storage.find_by_id(RecordKind.AUDIO, audio.id).transcript == "hello world"
        assert worker.get_status()["processed"] == 2

    def test_empty_answer_leaves_record_unchanged(self, storage, config_manager, fake_ai):
        fake_ai.description = ""
        shot = storage.create(RecordKind.SCREENSHOT, {"path": "/s.webp"})
        worker = AIWorker(storage, config_manager, client=fake_ai)
        worker.describe_screenshot(shot.id, shot.path)
        worker.run_pending()
        assert storage.find_by_id(RecordKind.SCREENSHOT, shot.id).text_description is None

    def test_deleted_record_is_ignored(self, storage, config_manager, fake_ai):
        worker = AIWorker(storage, config_manager, client=fake_ai)
        worker.describe_screenshot(999, "/gone.webp")
        assert worker.run_pending() == 1
        assert worker.get_status()["processed"] == 0

    def test_full_queue_drops_jobs(self, storage, config_manager, fake_ai):
        config_manager.config.ai.queue_size = 2
        worker = AIWorker(storage, config_manager, client=fake_ai)

        assert worker.describe_screenshot(1, "/a")
        assert worker.describe_screenshot(2, "/b")
        assert worker.describe_screenshot(3, "/c") is False

        status = worker.get_status()
        assert status["queue_size"] == 2
        assert status["dropped"] == 1

    def test_disabled_ai_queues_nothing(self, storage, config_manager, fake_ai):
        config_manager.config.ai.enabled = False
        worker = AIWorker(storage, config_manager, client=fake_ai)
        assert worker.describe_screenshot(1, "/a") is False
        assert worker.get_status()["queue_size"] == 0

    def test_background_thread(self, storage, config_manager, fake_ai):
        shot = storage.create(RecordKind.SCREENSHOT, {"path": "/s.webp"})
        worker = AIWorker(storage, config_manager, client=fake_ai)
        worker.start()
        try:
            worker.describe_screenshot(shot.id, shot.path)
            for _ in range(200):
                if worker.get_status()["processed"]:
                    break
                worker._thread.join(0.01)
        finally:
            worker.stop()

        assert not worker.get_status()["running"]
        assert storage.find_by_id(RecordKind.SCREENSHOT, shot.id).text_description == "A code editor"


class TestManualProcessing:

    def test_reprocessing_overwrites(self, storage, config_manager, fake_ai):
        shot = storage.create(RecordKind.SCREENSHOT, {"path": "/s.webp", "text_description": "old"})
        audio = storage.create(RecordKind.AUDIO, {"path": "/a.wav", "duration": 3.0, "transcript": "old"})
        worker = AIWorker(storage, config_manager, client=fake_ai)

        assert worker.process_now("screenshot", shot.id).text_description == "A code editor"
        assert worker.process_now(RecordKind.AUDIO, audio.id).transcript == "hello world"
        assert storage.find_by_id(RecordKind.SCREENSHOT, shot.id).text_description == "A code editor"
        assert worker.get_status()["processed"] == 2

    def test_missing_record(self, storage, config_manager, fake_ai):
        worker = AIWorker(storage, config_manager, client=fake_ai)
        with pytest.raises(NotFound):
            worker.process_now(RecordKind.SCREENSHOT, 42)

    def test_empty_answer_keeps_previous_text(self, storage, config_manager, fake_ai):
        fake_ai.transcript = ""
        audio = storage.create(RecordKind.AUDIO, {"path": "/a.wav", "duration": 3.0, "transcript": "old"})
        worker = AIWorker(storage, config_manager, client=fake_ai)

        with pytest.raises(RecorderError):
            worker.process_now(RecordKind.AUDIO, audio.id)
        assert storage.find_by_id(RecordKind.AUDIO, audio.id).transcript == "old"

    def test_rejects_other_kinds_and_disabled_ai(self, storage, config_manager, fake_ai):
        worker = AIWorker(storage, config_manager, client=fake_ai)
        with pytest.raises(ValueError):
            worker.process_now(RecordKind.WEB, 1)

        config_manager.config.ai.enabled = False
        shot = storage.create(RecordKind.SCREENSHOT, {"path": "/s.webp"})
        with pytest.raises(ValueError):
            worker.process_now(RecordKind.SCREENSHOT, shot.id)
