"""Tests for hashing, energy, session boundaries and speech segmentation."""

import numpy as np
import pytest

from conftest import gradient_png
from recorder.dedup import (
    SpeechSegmenter,
    domain_of,
    energy_level,
    image_similarity,
    is_excluded_domain,
    session_boundary,
)


class TestImageSimilarity:

    def test_identical_bytes_are_duplicates(self):
        frame = gradient_png()
        first = image_similarity(frame, [])
        assert first.is_duplicate is False

        second = image_similarity(frame, [first.new_hash])
        assert second.is_duplicate is True
        assert second.new_hash == first.new_hash

    def test_changed_image_is_not_duplicate(self):
        first = image_similarity(gradient_png(), [])
        second = image_similarity(gradient_png(reverse=True), [first.new_hash])
        assert second.is_duplicate is False
        assert second.new_hash != first.new_hash

    def test_hash_is_fixed_length_hex(self):
        result = image_similarity(gradient_png(), [])
        assert len(result.new_hash) == 64
        int(result.new_hash, 16)

    def test_undecodable_bytes_raise_value_error(self):
        with pytest.raises(ValueError):
            image_similarity(b"not an image", [])


class TestEnergyLevel:

    def test_silence_is_zero(self):
        assert energy_level(np.zeros(800, dtype=np.int16)) == 0.0

    def test_constant_int16_level(self):
        frame = np.full(800, 16384, dtype=np.int16)
        assert energy_level(frame) == pytest.approx(0.5)

    def test_float_frames_are_used_as_is(self):
        frame = np.array([0.5, -0.5, 0.5, -0.5], dtype=np.float32)
        assert energy_level(frame) == pytest.approx(0.5)

    def test_empty_frame(self):
        assert energy_level(np.array([], dtype=np.int16)) == 0.0


class TestSessionBoundary:

    def test_same_entity(self):
        a = {"app_name": "Editor", "window_title": "main.py"}
        assert session_boundary(a, dict(a), ["app_name", "window_title"]) is False

    def test_title_change_is_boundary(self):
        a = {"app_name": "Editor", "window_title": "main.py"}
        b = {"app_name": "Editor", "window_title": "test.py"}
        assert session_boundary(a, b, ["app_name", "window_title"]) is True

    def test_keys_outside_match_are_ignored(self):
        a = {"url": "https://a.com", "title": "A"}
        b = {"url": "https://a.com", "title": "A (1 new)"}
        assert session_boundary(a, b, ["url"]) is False

    def test_none_transitions(self):
        a = {"url": "https://a.com"}
        assert session_boundary(None, None, ["url"]) is False
        assert session_boundary(None, a, ["url"]) is True
        assert session_boundary(a, None, ["url"]) is True


class TestDomainExclusion:

    def test_domain_of(self):
        assert domain_of("https://WWW.Example.com:8080/path?q=1") == "www.example.com"
        assert domain_of("not a url") == ""

    def test_exact_and_subdomain_match(self):
        excluded = ["facebook.com"]
        assert is_excluded_domain("https://facebook.com/", excluded)
        assert is_excluded_domain("https://www.facebook.com/feed", excluded)
        assert not is_excluded_domain("https://notfacebook.com/", excluded)
        assert not is_excluded_domain("https://facebook.com.evil.io/", excluded)

    def test_empty_list(self):
        assert not is_excluded_domain("https://example.com", [])


class TestSpeechSegmenter:

    def _segmenter(self, **overrides):
        params = dict(threshold=0.05, max_silence=3.0, min_speech=0.5, max_speech=30.0)
        params.update(overrides)
        return SpeechSegmenter(**params)

    def feed(self, segmenter, level, chunks, chunk=0.1):
        for _ in range(chunks):
            segmenter.feed(level, chunk)

    def test_speech_silence_speech(self):
        seg = self._segmenter()
        self.feed(seg, 0.5, 10)   # 0.0 - 1.0 speech
        self.feed(seg, 0.0, 40)   # 1.0 - 5.0 silence
        self.feed(seg, 0.5, 8)    # 5.0 - 5.8 speech
        seg.finish()

        speech = [s.to_dict() for s in seg.speech_segments]
        silence = [s.to_dict() for s in seg.silence_markers]
        assert speech == [{"start": 0.0, "end": 1.0}, {"start": 5.0, "end": 5.8}]
        assert silence == [{"start": 1.0, "end": 5.0}]

    def test_short_silence_is_not_a_marker(self):
        seg = self._segmenter()
        self.feed(seg, 0.5, 10)
        self.feed(seg, 0.0, 20)  # 2s < 3s
        self.feed(seg, 0.5, 10)
        seg.finish()
        assert seg.silence_markers == []
        assert len(seg.speech_segments) == 2

    def test_short_speech_is_not_a_segment(self):
        seg = self._segmenter()
        self.feed(seg, 0.0, 5)
        self.feed(seg, 0.5, 3)   # 0.3s < 0.5s
        self.feed(seg, 0.0, 5)
        seg.finish()
        assert seg.speech_segments == []

    def test_long_speech_is_split_at_max(self):
        seg = self._segmenter(max_speech=1.0, min_speech=0.2)
        self.feed(seg, 0.5, 25)
        seg.finish()

        spans = [(s.start, s.end) for s in seg.speech_segments]
        assert len(spans) == 3
        assert spans[0] == pytest.approx((0.0, 1.0))
        assert spans[1] == pytest.approx((1.0, 2.0))
        assert spans[2] == pytest.approx((2.0, 2.5))

    def test_segments_are_ordered_and_disjoint(self):
        seg = self._segmenter(max_speech=0.7, min_speech=0.1, max_silence=0.2)
        pattern = [(0.5, 12), (0.0, 4), (0.5, 3), (0.0, 1), (0.5, 9), (0.0, 6)]
        for level, chunks in pattern:
            self.feed(seg, level, chunks)
        seg.finish()

        for spans in (seg.speech_segments, seg.silence_markers):
            for span in spans:
                assert span.end >= span.start
            for earlier, later in zip(spans, spans[1:]):
                assert later.start >= earlier.end - 1e-9
