"""On-demand AI insights over a recent timeframe.

Insights are only created by an explicit request, never by the capture
loops. The activity in the timeframe is reduced to a compact bundle (counts
per kind, top domains and apps, a sample of descriptions and transcripts)
which the text model summarizes.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from .dedup import domain_of
from .models import AIInsight, RecordKind
from .scheduler import utcnow

logger = logging.getLogger(__name__)

TIMEFRAMES = {
    "hour": relativedelta(hours=1),
    "day": relativedelta(days=1),
    "week": relativedelta(weeks=1),
    "month": relativedelta(months=1),
}

TOP_N = 5
MAX_DESCRIPTIONS = 20
MAX_TRANSCRIPTS = 10
MAX_TRANSCRIPT_CHARS = 500

PLACEHOLDER = "No summary available: the AI provider did not return a response."


def timeframe_bounds(timeframe: str, now: Optional[datetime] = None):
    """(start, end) covering ``timeframe`` up to ``now``.

    Raises:
        ValueError: If ``timeframe`` is not hour, day, week or month
    """
    if timeframe not in TIMEFRAMES:
        raise ValueError(f"Unknown timeframe {timeframe!r} (expected one of: {', '.join(TIMEFRAMES)})")
    end = now or utcnow()
    return end - TIMEFRAMES[timeframe], end


def build_activity_bundle(storage, timeframe: str, start: datetime, end: datetime) -> dict:
    """Collect the activity between ``start`` and ``end`` for summarization."""
    screenshots = storage.find(RecordKind.SCREENSHOT, start, end)
    recordings = storage.find(RecordKind.AUDIO, start, end)
    web = storage.find(RecordKind.WEB, start, end)
    apps = storage.find(RecordKind.APP, start, end)

    domains = Counter(domain_of(entry.url) for entry in web if domain_of(entry.url))
    app_time = Counter()
    for usage in apps:
        app_time[usage.app_name] += usage.duration

    return {
        "timeframe": timeframe,
        "startDate": start,
        "endDate": end,
        "dataPointCounts": {
            "screenshots": len(screenshots),
            "audioRecordings": len(recordings),
            "webHistory": len(web),
            "appUsage": len(apps),
        },
        "topWebsites": [domain for domain, _ in domains.most_common(TOP_N)],
        "topApps": [
            {"app": app, "seconds": seconds} for app, seconds in app_time.most_common(TOP_N)
        ],
        "screenDescriptions": [
            s.text_description for s in screenshots if s.text_description
        ][:MAX_DESCRIPTIONS],
        "transcripts": [
            r.transcript[:MAX_TRANSCRIPT_CHARS] for r in recordings if r.transcript
        ][:MAX_TRANSCRIPTS],
    }


def generate_insight(storage, ai_client, timeframe: str, now: Optional[datetime] = None) -> AIInsight:
    """Summarize the given timeframe and persist the result as an insight.

    A provider failure still produces an insight, with placeholder content,
    so that the counts for the period are kept.
    """
    start, end = timeframe_bounds(timeframe, now)
    bundle = build_activity_bundle(storage, timeframe, start, end)

    content = ai_client.summarize(bundle) if ai_client is not None else ""
    if not content:
        logger.warning(f"No AI summary for {timeframe}, storing placeholder")
        content = PLACEHOLDER

    insight = storage.create(RecordKind.INSIGHT, {
        "timestamp": end,
        "content": content,
        "type": f"summary_{timeframe}",
        "metadata": {
            "timeframe": timeframe,
            "startDate": start,
            "endDate": end,
            "dataPointCounts": bundle["dataPointCounts"],
        },
    })
    logger.info(f"Generated {timeframe} insight {insight.id}")
    return insight


def get_recent_insights(storage, limit: int = 10) -> List[AIInsight]:
    return storage.find(RecordKind.INSIGHT, limit=limit)
