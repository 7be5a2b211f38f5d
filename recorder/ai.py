"""AI provider client for post-processing and insights.

Connects to Ollama over its HTTP API: a vision model describes screenshots
and a text model summarizes activity bundles. Audio transcription goes to an
optional OpenAI-compatible ``/v1/audio/transcriptions`` endpoint.

Every public method degrades to an empty string on failure. Callers never
see provider errors; they are logged here.
"""

import base64
import io
import json
import logging
import time
from pathlib import Path
from typing import Optional

import requests
from PIL import Image

from .config import AIConfig
from .errors import EnrichmentFailure

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 1024

DESCRIBE_PROMPT = (
    "Describe what the user is doing in this screenshot in one or two sentences. "
    "Mention the application and the task, not the screen layout."
)

SUMMARY_PROMPT = (
    "You are summarizing a person's computer activity for the {timeframe} from "
    "{start} to {end}. Using the activity data below, write a short summary of "
    "what they worked on, the main applications and websites, and any notable "
    "patterns. Keep it under 150 words.\n\n{data}"
)


def prepare_image(path: str) -> str:
    """Resize an image to at most 1024px and return it base64-encoded as JPEG."""
    with Image.open(path) as img:
        if img.width > MAX_IMAGE_SIZE or img.height > MAX_IMAGE_SIZE:
            img.thumbnail((MAX_IMAGE_SIZE, MAX_IMAGE_SIZE), Image.Resampling.LANCZOS)
        if img.mode != "RGB":
            img = img.convert("RGB")

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=85)
        return base64.b64encode(buffer.getvalue()).decode("utf-8")


class OllamaClient:
    """Describe/transcribe/summarize capability backed by HTTP providers.

    Attributes:
        config: AI section of the configuration (host, models, timeout)
    """

    def __init__(self, config: Optional[AIConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or AIConfig()
        self.session = session or requests.Session()

    @property
    def ollama_host(self) -> str:
        return self.config.ollama_host.rstrip("/")

    def _call_ollama_api(self, model: str, prompt: str, images: list[str] = None) -> str:
        """Call the Ollama chat API.

        Raises:
            EnrichmentFailure: If the API call fails or times out
        """
        message = {"role": "user", "content": prompt}
        if images:
            message["images"] = images

        payload = {
            "model": model,
            "messages": [message],
            "stream": False,
        }

        start_time = time.time()
        try:
            response = self.session.post(
                f"{self.ollama_host}/api/chat",
                json=payload,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            content = response.json()["message"]["content"]
        except requests.exceptions.Timeout as e:
            raise EnrichmentFailure(f"Ollama API timed out after {self.config.timeout_seconds}s") from e
        except requests.exceptions.ConnectionError as e:
            raise EnrichmentFailure(f"Cannot connect to Ollama at {self.ollama_host}") from e
        except requests.exceptions.RequestException as e:
            raise EnrichmentFailure(f"Ollama API error: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise EnrichmentFailure(f"Unexpected Ollama response: {e}") from e

        logger.info(f"LLM inference ({model}) completed in {time.time() - start_time:.2f}s")
        return (content or "").strip()

    def describe_image(self, path: str) -> str:
        """Describe a screenshot with the vision model ('' on failure)."""
        try:
            image = prepare_image(path)
            return self._call_ollama_api(self.config.vision_model, DESCRIBE_PROMPT, [image])
        except (EnrichmentFailure, OSError) as e:
            logger.warning(f"Screenshot description failed for {path}: {e}")
            return ""

    def transcribe(self, path: str) -> str:
        """Transcribe an audio file ('' on failure or when no endpoint is set)."""
        if not self.config.transcription_url:
            logger.debug("No transcription endpoint configured")
            return ""

        try:
            with open(path, "rb") as f:
                response = self.session.post(
                    self.config.transcription_url,
                    files={"file": (Path(path).name, f, "audio/wav")},
                    data={"model": self.config.transcription_model},
                    timeout=self.config.timeout_seconds,
                )
            response.raise_for_status()
            return (response.json().get("text") or "").strip()
        except (requests.exceptions.RequestException, OSError, ValueError, AttributeError) as e:
            logger.warning(f"Transcription failed for {path}: {e}")
            return ""

    def summarize(self, bundle: dict) -> str:
        """Summarize an activity bundle with the text model ('' on failure)."""
        prompt = SUMMARY_PROMPT.format(
            timeframe=bundle.get("timeframe", "period"),
            start=bundle.get("startDate", "?"),
            end=bundle.get("endDate", "?"),
            data=json.dumps(bundle, indent=2, default=str),
        )
        try:
            return self._call_ollama_api(self.config.text_model, prompt)
        except EnrichmentFailure as e:
            logger.warning(f"Activity summary failed: {e}")
            return ""

    def is_available(self) -> bool:
        """Check that Ollama is reachable and the text model is pulled."""
        try:
            response = self.session.get(f"{self.ollama_host}/api/tags", timeout=self.config.timeout_seconds)
            response.raise_for_status()
            model_names = [m.get("name", "") for m in response.json().get("models", [])]
        except requests.exceptions.RequestException as e:
            logger.warning(f"Cannot connect to Ollama at {self.ollama_host}: {e}")
            return False
        except ValueError as e:
            logger.warning(f"Ollama check failed: {e}")
            return False

        model_base = self.config.text_model.split(":")[0]
        if not any(name.startswith(model_base) for name in model_names):
            logger.warning(f"Model {self.config.text_model} not found in Ollama")
            return False
        return True
