"""Tests for on-demand activity insights."""

from datetime import datetime, timedelta, timezone

import pytest

from recorder.insights import (
    PLACEHOLDER,
    build_activity_bundle,
    generate_insight,
    get_recent_insights,
    timeframe_bounds,
)
from recorder.models import RecordKind

NOW = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def activity(storage):
    for minutes, url in ((10, "https://docs.python.org/3/"), (20, "https://docs.python.org/2/"),
                         (30, "https://news.example.com/")):
        storage.create(RecordKind.WEB, {"timestamp": NOW - timedelta(minutes=minutes),
                                        "url": url, "title": "", "duration": 60})
    storage.create(RecordKind.APP, {"app_name": "Editor", "window_title": "a.py",
                                    "start_time": NOW - timedelta(minutes=50), "duration": 900})
    storage.create(RecordKind.APP, {"app_name": "Terminal", "window_title": "bash",
                                    "start_time": NOW - timedelta(minutes=40), "duration": 120})
    storage.create(RecordKind.SCREENSHOT, {"timestamp": NOW - timedelta(minutes=5), "path": "/s.webp",
                                           "text_description": "Writing tests"})
    storage.create(RecordKind.SCREENSHOT, {"timestamp": NOW - timedelta(days=3), "path": "/old.webp",
                                           "text_description": "Old work"})
    return storage


class TestTimeframes:

    def test_bounds(self):
        assert timeframe_bounds("hour", NOW) == (NOW - timedelta(hours=1), NOW)
        assert timeframe_bounds("week", NOW)[0] == NOW - timedelta(days=7)
        assert timeframe_bounds("month", NOW)[0] == datetime(2024, 2, 1, 18, 0, tzinfo=timezone.utc)

    def test_unknown_timeframe(self):
        with pytest.raises(ValueError):
            timeframe_bounds("decade", NOW)


class TestBundle:

    def test_bundle_contents(self, activity):
        start, end = timeframe_bounds("day", NOW)
        bundle = build_activity_bundle(activity, "day", start, end)

        assert bundle["dataPointCounts"] == {
            "screenshots": 1, "audioRecordings": 0, "webHistory": 3, "appUsage": 2,
        }
        assert bundle["topWebsites"] == ["docs.python.org", "news.example.com"]
        assert bundle["topApps"] == [{"app": "Editor", "seconds": 900}, {"app": "Terminal", "seconds": 120}]
        assert bundle["screenDescriptions"] == ["Writing tests"]


class TestGenerateInsight:

    def test_stores_summary(self, activity, fake_ai):
        insight = generate_insight(activity, fake_ai, "day", now=NOW)

        assert insight.content == "Busy day"
        assert insight.type == "summary_day"
        assert insight.timestamp == NOW
        assert insight.metadata["dataPointCounts"]["webHistory"] == 3
        assert fake_ai.bundles[0]["timeframe"] == "day"

    def test_ai_failure_stores_placeholder(self, activity, fake_ai):
        fake_ai.summary = ""
        insight = generate_insight(activity, fake_ai, "hour", now=NOW)
        assert insight.content == PLACEHOLDER
        assert insight.metadata["dataPointCounts"]["screenshots"] == 1

    def test_recent_insights_newest_first(self, storage, fake_ai):
        first = generate_insight(storage, fake_ai, "hour", now=NOW)
        second = generate_insight(storage, fake_ai, "hour", now=NOW + timedelta(hours=1))
        assert [i.id for i in get_recent_insights(storage, 10)] == [second.id, first.id]
        assert len(get_recent_insights(storage, 1)) == 1
