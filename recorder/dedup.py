"""Deduplication and segmentation of raw capture output.

Pure functions used by the capture loops to decide whether and how a raw
sample is persisted:

- ``image_similarity``: difference hash (dhash) of a grayscale thumbnail,
  tested for exact membership in the recent-hash ring
- ``energy_level``: RMS of a normalized PCM frame
- ``SpeechSegmenter``: folds per-chunk energy into silence markers and
  speech segments
- ``session_boundary``: "did the tracked entity change" check shared by the
  app and web loops
- ``domain_of`` / ``is_excluded_domain``: privacy filter for URLs
"""

import io
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

import numpy as np
from PIL import Image

from .models import Segment

logger = logging.getLogger(__name__)

HASH_SIZE = 16


@dataclass(frozen=True)
class SimilarityResult:
    is_duplicate: bool
    new_hash: str


def dhash(img: Image.Image, hash_size: int = HASH_SIZE) -> str:
    """Generate a difference hash for perceptual image comparison.

    The image is resized to (hash_size+1) x hash_size, converted to grayscale
    and each pixel is compared with its right-hand neighbour. The resulting
    bit vector is returned as hex (hash_size**2 / 4 characters).
    """
    img = img.convert("L").resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
    pixels = list(img.getdata())

    value = 0
    bit = 0
    for row in range(hash_size):
        row_start = row * (hash_size + 1)
        for col in range(hash_size):
            if pixels[row_start + col] > pixels[row_start + col + 1]:
                value |= 1 << bit
            bit += 1

    return f"{value:0{hash_size * hash_size // 4}x}"


def image_similarity(image_bytes: bytes, reference_hashes: Iterable[str]) -> SimilarityResult:
    """Hash ``image_bytes`` and test it against recently retained hashes.

    Args:
        image_bytes: Encoded image (any format Pillow can open)
        reference_hashes: Hashes of the last persisted screenshots

    Returns:
        SimilarityResult with ``is_duplicate`` set when the exact hash was
        already seen.

    Raises:
        ValueError: If the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            new_hash = dhash(img)
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Cannot decode image for hashing: {e}") from e
    return SimilarityResult(is_duplicate=new_hash in set(reference_hashes), new_hash=new_hash)


def energy_level(frame) -> float:
    """Root-mean-square level of a PCM frame, normalized to 0.0-1.0.

    Integer frames are scaled by their dtype's full range; float frames are
    assumed to already be in -1.0..1.0.
    """
    samples = np.asarray(frame)
    if samples.size == 0:
        return 0.0
    if np.issubdtype(samples.dtype, np.integer):
        scale = float(np.iinfo(samples.dtype).max) + 1.0
        samples = samples.astype(np.float64) / scale
    else:
        samples = samples.astype(np.float64)
    return float(np.sqrt(np.mean(np.square(samples))))


def _field(entity: Any, key: str) -> Any:
    if isinstance(entity, dict):
        return entity.get(key)
    return getattr(entity, key, None)


def session_boundary(previous: Any, current: Any, match_keys: Sequence[str]) -> bool:
    """Return True when ``current`` is a different tracked entity than ``previous``.

    Entities may be dicts or objects; ``None`` means "nothing tracked".
    """
    if previous is None and current is None:
        return False
    if previous is None or current is None:
        return True
    return any(_field(previous, key) != _field(current, key) for key in match_keys)


def domain_of(url: str) -> str:
    """Lowercased hostname of ``url`` ('' if it has none)."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_excluded_domain(url: str, excluded: Iterable[str]) -> bool:
    """Exact domain match, or subdomain match on ``.domain``."""
    domain = domain_of(url)
    if not domain:
        return False
    for entry in excluded:
        entry = entry.strip().lower().lstrip(".")
        if entry and (domain == entry or domain.endswith("." + entry)):
            return True
    return False


class SpeechSegmenter:
    """Fold a stream of per-chunk energy levels into silence/speech spans.

    A chunk whose level is below ``threshold`` is silent. A silent run longer
    than ``max_silence`` becomes a silence marker. A loud run of at least
    ``min_speech`` becomes a speech segment; runs longer than ``max_speech``
    are split into consecutive segments of exactly ``max_speech``.

    All times are seconds from the start of the recording, so both output
    lists are sorted by ``start`` and never overlap.
    """

    def __init__(self, threshold: float, max_silence: float, min_speech: float, max_speech: float):
        self.threshold = threshold
        self.max_silence = max_silence
        self.min_speech = min_speech
        self.max_speech = max_speech

        self.position = 0.0
        self.silence_markers: List[Segment] = []
        self.speech_segments: List[Segment] = []
        self._silence_start: Optional[float] = None
        self._speech_start: Optional[float] = None

    def feed(self, level: float, duration: float) -> None:
        """Account for one chunk of ``duration`` seconds at ``level``."""
        chunk_start = self.position
        self.position += max(duration, 0.0)

        if level < self.threshold:
            self._close_speech(chunk_start)
            if self._silence_start is None:
                self._silence_start = chunk_start
            return

        self._close_silence(chunk_start)
        if self._speech_start is None:
            self._speech_start = chunk_start
        while self.max_speech > 0 and self.position - self._speech_start >= self.max_speech:
            split_at = self._speech_start + self.max_speech
            self.speech_segments.append(Segment(self._speech_start, split_at))
            self._speech_start = split_at

    def finish(self) -> None:
        """Close any open run at the current position."""
        self._close_speech(self.position)
        self._close_silence(self.position)

    def _close_silence(self, end: float) -> None:
        if self._silence_start is None:
            return
        if end - self._silence_start > self.max_silence:
            self.silence_markers.append(Segment(self._silence_start, end))
        self._silence_start = None

    def _close_speech(self, end: float) -> None:
        if self._speech_start is None:
            return
        length = end - self._speech_start
        if length > 0 and length >= self.min_speech:
            self.speech_segments.append(Segment(self._speech_start, end))
        self._speech_start = None
