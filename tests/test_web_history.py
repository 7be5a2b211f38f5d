"""Tests for browser history polling and URL sessions."""

import sqlite3
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FakeProbe
from recorder.errors import EnrichmentFailure
from recorder.models import RecordKind
from recorder.web_history import (
    CHROME_EPOCH_OFFSET,
    CHROMIUM_LAST_VISIT,
    BrowserHistoryProbe,
    BrowserState,
    HistorySource,
    WebHistoryTracker,
    default_favicon,
    fetch_page_details,
)


def no_fetch(url, timeout):
    raise AssertionError("page fetch not expected")


@pytest.fixture
def probe():
    return FakeProbe()


def make_tracker(storage, config_manager, clock, probe, fetcher=no_fetch):
    return WebHistoryTracker(storage, config_manager, probe=probe, fetcher=fetcher, clock=clock)


class TestWebHistoryTracker:

    def test_url_change_closes_session(self, storage, config_manager, clock, probe):
        tracker = make_tracker(storage, config_manager, clock, probe)
        probe.state = BrowserState("https://example.com/a", "Page A", "chrome")
        tracker.start(60000)

        clock.advance(42)
        probe.state = BrowserState("https://example.com/b", "Page B", "chrome")
        tracker.tick_once()
        clock.advance(8)
        assert tracker.stop() is True

        rows = storage.find(RecordKind.WEB, descending=False)
        assert [(r.url, r.title, r.duration) for r in rows] == [
            ("https://example.com/a", "Page A", 42),
            ("https://example.com/b", "Page B", 8),
        ]
        assert rows[0].metadata == {
            "source": "chrome",
            "favicon": "https://example.com/favicon.ico",
            "domain": "example.com",
        }

    def test_same_url_keeps_session(self, storage, config_manager, clock, probe):
        tracker = make_tracker(storage, config_manager, clock, probe)
        probe.state = BrowserState("https://example.com/", "Home")
        for _ in range(5):
            tracker.tick_once()
            clock.advance(5)
        assert storage.find(RecordKind.WEB) == []
        assert tracker.current_url() == "https://example.com/"

    def test_excluded_domain_is_dropped(self, storage, config_manager, clock, probe):
        config_manager.config.privacy.excluded_websites = ["facebook.com"]
        tracker = make_tracker(storage, config_manager, clock, probe)

        probe.state = BrowserState("https://www.facebook.com/feed", "Feed")
        tracker.start(60000)
        clock.advance(60)
        probe.state = BrowserState("https://example.com/", "Example")
        tracker.tick_once()
        clock.advance(30)
        tracker.stop()

        assert [r.url for r in storage.find(RecordKind.WEB)] == ["https://example.com/"]

    def test_missing_title_is_fetched(self, storage, config_manager, clock, probe):
        fetcher = MagicMock(return_value=("Fetched", "https://example.com/icon.png"))
        tracker = make_tracker(storage, config_manager, clock, probe, fetcher=fetcher)

        probe.state = BrowserState("https://example.com/", None)
        tracker.tick_once()
        clock.advance(10)
        probe.state = None
        tracker.tick_once()

        row = storage.find(RecordKind.WEB)[0]
        assert row.title == "Fetched"
        assert row.metadata["favicon"] == "https://example.com/icon.png"
        # default 5s period caps the 3s configured timeout at half a period
        fetcher.assert_called_once_with("https://example.com/", 2.5)

    def test_enrichment_timeout_follows_interval(self, storage, config_manager, clock, probe):
        fetcher = MagicMock(return_value=("Fetched", None))
        tracker = make_tracker(storage, config_manager, clock, probe, fetcher=fetcher)
        tracker.interval_ms = 1000

        probe.state = BrowserState("https://example.com/slow", None)
        tracker.tick_once()
        clock.advance(4)
        tracker._flush()

        fetcher.assert_called_once_with("https://example.com/slow", 0.5)

        config_manager.config.web_history.enrichment_timeout_seconds = 1.0
        tracker = make_tracker(storage, config_manager, clock, probe, fetcher=fetcher)
        tracker.interval_ms = 60000
        tracker.tick_once()
        clock.advance(4)
        tracker._flush()

        assert fetcher.call_args.args == ("https://example.com/slow", 1.0)

    def test_enrichment_failure_falls_back_to_url(self, storage, config_manager, clock, probe):
        def failing(url, timeout):
            raise EnrichmentFailure("timed out")

        tracker = make_tracker(storage, config_manager, clock, probe, fetcher=failing)
        probe.state = BrowserState("https://example.com/page", "")
        tracker.tick_once()
        clock.advance(10)
        tracker._flush()

        row = storage.find(RecordKind.WEB)[0]
        assert row.title == "https://example.com/page"
        assert row.metadata["favicon"] == "https://example.com/favicon.ico"

    def test_enrichment_disabled(self, storage, config_manager, clock, probe):
        config_manager.config.web_history.enrich_titles = False
        tracker = make_tracker(storage, config_manager, clock, probe)
        probe.state = BrowserState("https://example.com/x", None)
        tracker.tick_once()
        clock.advance(3)
        tracker._flush()
        assert storage.find(RecordKind.WEB)[0].title == "https://example.com/x"


def make_chrome_history(path, visits):
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE urls (id INTEGER PRIMARY KEY, url TEXT, title TEXT)")
    conn.execute("CREATE TABLE visits (id INTEGER PRIMARY KEY, url INTEGER, visit_time INTEGER)")
    for n, (url, title, when) in enumerate(visits, start=1):
        conn.execute("INSERT INTO urls VALUES (?, ?, ?)", (n, url, title))
        micros = int((when.timestamp() + CHROME_EPOCH_OFFSET) * 1_000_000)
        conn.execute("INSERT INTO visits (url, visit_time) VALUES (?, ?)", (n, micros))
    conn.commit()
    conn.close()


class TestBrowserHistoryProbe:

    def test_latest_visit_across_browsers(self, tmp_path):
        early = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        late = datetime(2024, 3, 1, 9, 5, tzinfo=timezone.utc)
        chrome_db, brave_db = tmp_path / "chrome-History", tmp_path / "brave-History"
        make_chrome_history(chrome_db, [("https://a.com/", "A", early)])
        make_chrome_history(brave_db, [("https://b.com/", "B", late)])

        probe = BrowserHistoryProbe([], sources=[
            HistorySource("chrome", chrome_db, CHROMIUM_LAST_VISIT),
            HistorySource("brave", brave_db, CHROMIUM_LAST_VISIT),
        ])
        try:
            state = probe()
        finally:
            probe.close()

        assert state.url == "https://b.com/"
        assert state.source == "brave"
        assert state.visited_at == late

    def test_unreadable_source_is_skipped(self, tmp_path):
        probe = BrowserHistoryProbe([], sources=[
            HistorySource("chrome", tmp_path / "missing", CHROMIUM_LAST_VISIT),
        ])
        assert probe() is None
        probe.close()


class TestFetchPageDetails:

    def _response(self, body, content_type="text/html; charset=utf-8"):
        response = MagicMock()
        response.text = body
        response.url = "https://example.com/page"
        response.headers = {"Content-Type": content_type}
        response.raise_for_status.return_value = None
        return response

    def test_title_and_icon(self):
        body = ('<html><head><title> Hello &amp;\n World </title>'
                '<link rel="shortcut icon" href="/static/fav.png"></head></html>')
        with patch("recorder.web_history.requests.get", return_value=self._response(body)):
            title, favicon = fetch_page_details("https://example.com/page", 3.0)
        assert title == "Hello & World"
        assert favicon == "https://example.com/static/fav.png"

    def test_network_error_raises_enrichment_failure(self):
        with patch("recorder.web_history.requests.get", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(EnrichmentFailure):
                fetch_page_details("https://example.com/", 0.1)

    def test_non_html_raises_enrichment_failure(self):
        with patch("recorder.web_history.requests.get", return_value=self._response("{}", "application/json")):
            with pytest.raises(EnrichmentFailure):
                fetch_page_details("https://example.com/api", 1.0)

    def test_default_favicon(self):
        assert default_favicon("https://example.com/a/b?c=1") == "https://example.com/favicon.ico"
        assert default_favicon("about:blank") is None
