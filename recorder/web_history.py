"""Browser history tracking.

Polls the history databases of locally installed browsers and attributes
dwell time to the most recently visited URL. Browsers keep their history
files locked, so each one is copied to a private temporary directory; the
copy is reused for as long as the source file's mtime is unchanged.

A URL session closes when a different URL becomes the most recent visit,
when no browser history is readable, or when the loop stops. Closed
sessions on privacy-excluded domains are dropped; the rest are persisted
as ``WebHistoryEntry`` rows. When the browser recorded no page title, a
best-effort fetch with a short timeout fills it in, falling back to the URL.
"""

import glob
import html
import logging
import os
import re
import shutil
import sqlite3
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests

from .config import DEFAULT_WEB_HISTORY_INTERVAL_MS, clamp
from .dedup import domain_of, is_excluded_domain
from .errors import EnrichmentFailure
from .models import RecordKind
from .scheduler import CaptureLoop
from .sessions import ClosedSession, SessionTracker

logger = logging.getLogger(__name__)

# Chrome stores microseconds since 1601-01-01 UTC
CHROME_EPOCH_OFFSET = 11644473600

CHROMIUM_HISTORY_PATHS = {
    "chrome": "~/.config/google-chrome/Default/History",
    "chromium": "~/.config/chromium/Default/History",
    "brave": "~/.config/BraveSoftware/Brave-Browser/Default/History",
    "edge": "~/.config/microsoft-edge/Default/History",
}
FIREFOX_PROFILES_GLOB = "~/.mozilla/firefox/*/places.sqlite"

CHROMIUM_LAST_VISIT = """
    SELECT u.url, u.title, v.visit_time
    FROM visits v JOIN urls u ON v.url = u.id
    ORDER BY v.visit_time DESC LIMIT 1
"""
FIREFOX_LAST_VISIT = """
    SELECT p.url, p.title, v.visit_date
    FROM moz_historyvisits v JOIN moz_places p ON v.place_id = p.id
    ORDER BY v.visit_date DESC LIMIT 1
"""

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) activity-recorder"
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_LINK_RE = re.compile(r"<link\b[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r"""(\w[\w-]*)\s*=\s*["']([^"']*)["']""")


@dataclass
class BrowserState:
    """The URL currently considered open in the browser."""
    url: str
    title: Optional[str] = None
    source: str = ""
    visited_at: Optional[datetime] = None


@dataclass
class HistorySource:
    browser: str
    path: Path
    query: str
    firefox: bool = False


def discover_sources(browsers: List[str]) -> List[HistorySource]:
    """History databases present on this machine for the given browsers."""
    sources = []
    for browser in browsers:
        browser = browser.lower()
        if browser == "firefox":
            for profile_db in sorted(glob.glob(os.path.expanduser(FIREFOX_PROFILES_GLOB))):
                sources.append(HistorySource("firefox", Path(profile_db), FIREFOX_LAST_VISIT, firefox=True))
        elif browser in CHROMIUM_HISTORY_PATHS:
            path = Path(CHROMIUM_HISTORY_PATHS[browser]).expanduser()
            if path.exists():
                sources.append(HistorySource(browser, path, CHROMIUM_LAST_VISIT))
        else:
            logger.warning(f"Unknown browser in config: {browser}")
    return sources


class BrowserHistoryProbe:
    """Reads the most recent visit across all configured browsers.

    Calling the probe returns a ``BrowserState`` or None when no history is
    readable.
    """

    def __init__(self, browsers: List[str], sources: Optional[List[HistorySource]] = None):
        self.browsers = list(browsers)
        self.sources = sources if sources is not None else discover_sources(self.browsers)
        self._copy_dir: Optional[str] = None
        self._copies: Dict[Path, Tuple[Tuple[float, ...], Path]] = {}

        if not self.sources:
            logger.warning(f"No browser history found for: {', '.join(self.browsers)}")

    def __call__(self) -> Optional[BrowserState]:
        latest: Optional[BrowserState] = None
        for source in self.sources:
            try:
                state = self._read_last_visit(source)
            except (OSError, sqlite3.Error) as e:
                logger.debug(f"Could not read {source.browser} history at {source.path}: {e}")
                continue
            if state is not None and (latest is None or state.visited_at > latest.visited_at):
                latest = state
        return latest

    def close(self) -> None:
        """Remove the temporary history copies."""
        if self._copy_dir:
            shutil.rmtree(self._copy_dir, ignore_errors=True)
        self._copy_dir = None
        self._copies.clear()

    def _snapshot(self, source: HistorySource) -> Path:
        """Copy the history file (and its WAL) unless the cached copy is current."""
        sidecar = Path(f"{source.path}-wal")
        stamp = (source.path.stat().st_mtime,) + ((sidecar.stat().st_mtime,) if sidecar.exists() else ())

        cached = self._copies.get(source.path)
        if cached and cached[0] == stamp:
            return cached[1]

        if self._copy_dir is None:
            self._copy_dir = tempfile.mkdtemp(prefix="activity-recorder-history-")
        if cached:
            target = cached[1]
        else:
            target = Path(self._copy_dir) / f"{source.browser}-{len(self._copies)}.sqlite"
        shutil.copy2(source.path, target)
        target_wal = Path(f"{target}-wal")
        if sidecar.exists():
            shutil.copy2(sidecar, target_wal)
        elif target_wal.exists():
            target_wal.unlink()

        self._copies[source.path] = (stamp, target)
        return target

    def _read_last_visit(self, source: HistorySource) -> Optional[BrowserState]:
        snapshot = self._snapshot(source)
        conn = sqlite3.connect(str(snapshot), timeout=1)
        try:
            row = conn.execute(source.query).fetchone()
        finally:
            conn.close()
        if not row or not row[0]:
            return None

        url, title, raw_time = row
        if source.firefox:
            seconds = raw_time / 1_000_000
        else:
            seconds = raw_time / 1_000_000 - CHROME_EPOCH_OFFSET
        return BrowserState(
            url=url,
            title=title or None,
            source=source.browser,
            visited_at=datetime.fromtimestamp(seconds, tz=timezone.utc),
        )


def default_favicon(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/favicon.ico"


def fetch_page_details(url: str, timeout: float) -> Tuple[Optional[str], Optional[str]]:
    """Fetch ``url`` and extract its ``<title>`` and icon link.

    Returns:
        (title, favicon_url); either may be None.

    Raises:
        EnrichmentFailure: On any network error or non-HTML response
    """
    try:
        response = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise EnrichmentFailure(f"Failed to fetch {url}: {e}") from e

    if "html" not in response.headers.get("Content-Type", "html"):
        raise EnrichmentFailure(f"{url} is not an HTML page")

    page = response.text[:256 * 1024]
    title = None
    match = _TITLE_RE.search(page)
    if match:
        title = " ".join(html.unescape(match.group(1)).split()) or None

    favicon = None
    for tag in _LINK_RE.findall(page):
        attrs = {k.lower(): v for k, v in _ATTR_RE.findall(tag)}
        if "icon" in attrs.get("rel", "").lower().split() and attrs.get("href"):
            favicon = urljoin(response.url or url, attrs["href"])
            break

    return title, favicon


class WebHistoryTracker(CaptureLoop):
    """Attribute browsing time to URLs from browser history polling."""

    name = "web_history"
    kind = RecordKind.WEB
    config_section = "web_history"
    default_interval_ms = DEFAULT_WEB_HISTORY_INTERVAL_MS

    def __init__(
        self,
        storage,
        config_manager=None,
        probe: Optional[Callable[[], Optional[BrowserState]]] = None,
        fetcher: Callable[[str, float], Tuple[Optional[str], Optional[str]]] = fetch_page_details,
        clock=None,
    ):
        super().__init__(storage, config_manager, clock)
        self.probe = probe
        self.fetcher = fetcher
        self.sessions = SessionTracker(('url',))
        self.excluded_websites: List[str] = []

    def _prepare(self):
        settings = super()._prepare()
        settings.enrichment_timeout_seconds = clamp(settings.enrichment_timeout_seconds, 0.1, 9.0, 3.0)
        self.excluded_websites = list(self.config_manager.config.privacy.excluded_websites)
        if self.probe is None:
            self.probe = BrowserHistoryProbe(settings.browsers)
        return settings

    def current_url(self) -> Optional[str]:
        session = self.sessions.current
        return session.entity.url if session else None

    def _tick(self) -> None:
        if self.settings is None:
            self.settings = self._prepare()

        state = self.probe()
        closed = self.sessions.observe(state, self.clock())
        if closed is not None:
            self._save(closed)

    def _flush(self) -> None:
        closed = self.sessions.close(self.clock())
        if isinstance(self.probe, BrowserHistoryProbe):
            self.probe.close()
        if closed is not None:
            self._save(closed)

    def _save(self, session: ClosedSession) -> None:
        state = session.entity
        if is_excluded_domain(state.url, self.excluded_websites):
            logger.debug(f"Dropping session on excluded domain {domain_of(state.url)}")
            return

        title, favicon = self._enrich(state)
        self.storage.create(RecordKind.WEB, {
            "timestamp": session.start_time,
            "url": state.url,
            "title": title,
            "duration": int(session.duration_seconds),
            "metadata": {
                "source": state.source,
                "favicon": favicon,
                "domain": domain_of(state.url),
            },
        })
        logger.debug(f"Saved web session: {state.url} ({session.duration_seconds:.1f}s)")

    def _enrich(self, state: BrowserState) -> Tuple[str, Optional[str]]:
        title = state.title
        favicon = None
        if not title and self.settings.enrich_titles:
            # Enrichment runs on the tick thread; keep it well inside one period.
            timeout = min(self.settings.enrichment_timeout_seconds, self.interval_ms / 2000.0)
            try:
                title, favicon = self.fetcher(state.url, timeout)
            except EnrichmentFailure as e:
                logger.debug(f"Title lookup failed, using URL: {e}")
        return title or state.url, favicon or default_favicon(state.url)
