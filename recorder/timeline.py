"""Timeline consolidation.

Merges the five record kinds into one ordered list of ``TimelineItem``
objects for a day or a range of days, and partitions such lists into
``TimelineGroup`` objects by hour of day or by runs of the same activity.

Records are stored in UTC; day boundaries are computed in the caller's time
zone (local time by default) so that a day is the user's calendar day.

Ordering: newest first; equal timestamps are ordered by record kind
(screenshot, audio, web, app, insight) and then by id descending, which
makes repeated reads return identical sequences.
"""

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Union

from dateutil import parser as date_parser
from dateutil import tz as dateutil_tz

from .dedup import domain_of
from .models import (
    AIInsight,
    AppUsage,
    AudioRecording,
    Record,
    RecordKind,
    Screenshot,
    TimelineGroup,
    TimelineItem,
    WebHistoryEntry,
)

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]

GROUP_BY_HOUR = "hour"
GROUP_BY_ACTIVITY = "activity"

ACTIVITY_TITLES = {
    RecordKind.SCREENSHOT: "Screenshots",
    RecordKind.AUDIO: "Audio Recordings",
    RecordKind.WEB: "Web Browsing",
    RecordKind.APP: "Application Usage",
    RecordKind.INSIGHT: "AI Insights",
}


def local_tz() -> tzinfo:
    return dateutil_tz.tzlocal()


def parse_date(value: DateLike) -> date:
    """Accept a date, a datetime or an ISO-8601 string and return the date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date_parser.isoparse(value.strip()).date()
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid date: {value!r}") from e
    raise ValueError(f"Invalid date: {value!r}")


def start_of_day(day: date, tz: Optional[tzinfo] = None) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz or local_tz())


def end_of_day(day: date, tz: Optional[tzinfo] = None) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz or local_tz())


def iter_days(start: date, end: date) -> Iterable[date]:
    """Every calendar date from ``start`` to ``end`` inclusive.

    Steps on dates rather than datetimes, so DST shifts never skip or repeat
    a day.
    """
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


# =============================================================================
# Record -> TimelineItem
# =============================================================================

def _clock_label(moment: datetime, tz: tzinfo) -> str:
    return moment.astimezone(tz).strftime("%H:%M:%S")


def _screenshot_item(record: Screenshot, tz: tzinfo) -> TimelineItem:
    return TimelineItem(
        id=record.id,
        type=RecordKind.SCREENSHOT,
        timestamp=record.timestamp,
        title=f"Screenshot {_clock_label(record.timestamp, tz)}",
        description=record.text_description or "",
        path=record.path,
        metadata=record.metadata,
    )


def _audio_item(record: AudioRecording, tz: tzinfo) -> TimelineItem:
    return TimelineItem(
        id=record.id,
        type=RecordKind.AUDIO,
        timestamp=record.timestamp,
        title=f"Audio Recording {_clock_label(record.timestamp, tz)}",
        description=record.transcript or "",
        duration=record.duration,
        path=record.path,
        metadata=record.metadata,
    )


def _web_item(record: WebHistoryEntry, tz: tzinfo) -> TimelineItem:
    return TimelineItem(
        id=record.id,
        type=RecordKind.WEB,
        timestamp=record.timestamp,
        title=record.title or record.url,
        description=record.url,
        duration=record.duration,
        metadata=record.metadata,
    )


def _app_item(record: AppUsage, tz: tzinfo) -> TimelineItem:
    metadata = dict(record.metadata)
    metadata.update({
        "startTime": record.start_time,
        "endTime": record.end_time,
    })
    return TimelineItem(
        id=record.id,
        type=RecordKind.APP,
        timestamp=record.timestamp,
        title=record.app_name,
        description=record.window_title or "",
        duration=record.duration,
        metadata=metadata,
    )


def _insight_item(record: AIInsight, tz: tzinfo) -> TimelineItem:
    return TimelineItem(
        id=record.id,
        type=RecordKind.INSIGHT,
        timestamp=record.timestamp,
        title=f"AI Insight: {record.type}",
        description=record.content,
        metadata=record.metadata,
    )


_ITEM_BUILDERS: Dict[RecordKind, Callable[[Record, tzinfo], TimelineItem]] = {
    RecordKind.SCREENSHOT: _screenshot_item,
    RecordKind.AUDIO: _audio_item,
    RecordKind.WEB: _web_item,
    RecordKind.APP: _app_item,
    RecordKind.INSIGHT: _insight_item,
}


def to_timeline_item(kind: RecordKind, record: Record, tz: Optional[tzinfo] = None) -> TimelineItem:
    return _ITEM_BUILDERS[kind](record, tz or local_tz())


def item_from_dict(data: dict) -> TimelineItem:
    """Rebuild a TimelineItem from its JSON form (as returned by the API).

    Raises:
        ValueError: If a required field is missing or malformed
    """
    try:
        timestamp = data["timestamp"]
        if not isinstance(timestamp, datetime):
            timestamp = date_parser.isoparse(str(timestamp))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=local_tz())
        duration = data.get("duration")
        return TimelineItem(
            id=int(data["id"]),
            type=RecordKind.parse(data["type"]),
            timestamp=timestamp,
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            duration=float(duration) if duration is not None else None,
            path=data.get("path"),
            metadata=dict(data.get("metadata") or {}),
        )
    except (KeyError, TypeError, OverflowError) as e:
        raise ValueError(f"Invalid timeline item: {e}") from e


def sort_key(item: TimelineItem):
    return (-item.timestamp.timestamp(), item.type.rank, -item.id)


def sort_timeline(items: Iterable[TimelineItem]) -> List[TimelineItem]:
    return sorted(items, key=sort_key)


# =============================================================================
# Queries
# =============================================================================

def get_timeline_for_date(storage, day: DateLike, tz: Optional[tzinfo] = None) -> List[TimelineItem]:
    """All records of every kind whose timestamp falls on ``day``.

    Args:
        storage: Record store
        day: Calendar date (date, datetime or ISO string)
        tz: Time zone defining the day's boundaries (default: local)

    Returns:
        Timeline items, newest first.
    """
    tz = tz or local_tz()
    day = parse_date(day)
    start, end = start_of_day(day, tz), end_of_day(day, tz)

    items = []
    for kind in RecordKind:
        for record in storage.find(kind, start, end):
            items.append(to_timeline_item(kind, record, tz))

    logger.debug(f"Timeline for {day.isoformat()}: {len(items)} items")
    return sort_timeline(items)


def get_timeline_range(
    storage,
    start: DateLike,
    end: DateLike,
    tz: Optional[tzinfo] = None,
) -> Dict[str, List[TimelineItem]]:
    """Timeline for every day from ``start`` to ``end`` inclusive, keyed by ISO date.

    Raises:
        ValueError: If a date is invalid or ``start`` is after ``end``
    """
    start_day, end_day = parse_date(start), parse_date(end)
    if start_day > end_day:
        raise ValueError(f"Start date {start_day} is after end date {end_day}")
    return {
        day.isoformat(): get_timeline_for_date(storage, day, tz)
        for day in iter_days(start_day, end_day)
    }


# =============================================================================
# Grouping
# =============================================================================

def _new_group(group_id: str, title: str, item: TimelineItem) -> TimelineGroup:
    return TimelineGroup(
        id=group_id,
        title=title,
        items=[item],
        start_time=item.timestamp,
        end_time=item.end_time,
    )


def _add_to_group(group: TimelineGroup, item: TimelineItem) -> None:
    group.items.append(item)
    group.start_time = min(group.start_time, item.timestamp)
    group.end_time = max(group.end_time, item.end_time)


def _finish(groups: List[TimelineGroup]) -> List[TimelineGroup]:
    for group in groups:
        group.duration = (group.end_time - group.start_time).total_seconds()
    return groups


def group_timeline_items(
    items: List[TimelineItem],
    group_by: str = GROUP_BY_HOUR,
    tz: Optional[tzinfo] = None,
) -> List[TimelineGroup]:
    """Partition timeline items into groups.

    ``hour`` buckets items by local hour of day and orders the buckets by
    start time, newest first. ``activity`` splits the list, in its given
    order, into maximal runs of consecutive items of the same type.

    Every item lands in exactly one group. A group spans from its earliest
    timestamp to its latest timestamp extended by that item's duration.

    Raises:
        ValueError: If ``group_by`` is neither ``hour`` nor ``activity``
    """
    if group_by not in (GROUP_BY_HOUR, GROUP_BY_ACTIVITY):
        raise ValueError(f"Unknown grouping {group_by!r} (expected 'hour' or 'activity')")
    if not items:
        return []

    if group_by == GROUP_BY_HOUR:
        tz = tz or local_tz()
        buckets: Dict[int, TimelineGroup] = {}
        for item in items:
            hour = item.timestamp.astimezone(tz).hour
            if hour in buckets:
                _add_to_group(buckets[hour], item)
            else:
                buckets[hour] = _new_group(f"hour-{hour}", f"{hour}:00 - {hour + 1}:00", item)
        groups = sorted(buckets.values(), key=lambda g: g.start_time, reverse=True)
        return _finish(groups)

    groups: List[TimelineGroup] = []
    current: Optional[TimelineGroup] = None
    for item in items:
        if current is not None and current.items[-1].type == item.type:
            _add_to_group(current, item)
        else:
            current = _new_group(f"activity-{len(groups)}", ACTIVITY_TITLES[item.type], item)
            groups.append(current)
    return _finish(groups)


# =============================================================================
# Summary
# =============================================================================

def get_activity_summary(
    storage,
    start: DateLike,
    end: DateLike,
    tz: Optional[tzinfo] = None,
) -> List[dict]:
    """Per-day record counts and total attributed duration (seconds).

    Attributed duration is the sum of audio, web and app durations.
    """
    summary = []
    for day, items in get_timeline_range(storage, start, end, tz).items():
        counts = {kind: 0 for kind in RecordKind}
        total = 0.0
        for item in items:
            counts[item.type] += 1
            total += item.duration or 0
        summary.append({
            "date": day,
            "screenshots": counts[RecordKind.SCREENSHOT],
            "audioRecordings": counts[RecordKind.AUDIO],
            "webHistory": counts[RecordKind.WEB],
            "appUsage": counts[RecordKind.APP],
            "insights": counts[RecordKind.INSIGHT],
            "totalDuration": round(total, 3),
        })
    return summary


# =============================================================================
# Usage summaries
# =============================================================================

def _day_bounds(start: DateLike, end: DateLike, tz: Optional[tzinfo]):
    start_day, end_day = parse_date(start), parse_date(end)
    if start_day > end_day:
        raise ValueError(f"Start date {start_day} is after end date {end_day}")
    tz = tz or local_tz()
    return start_of_day(start_day, tz), end_of_day(end_day, tz)


def _usage_summary(entries, label: str, last_label: str, limit: Optional[int]) -> List[dict]:
    """Aggregate (key, duration, moment) triples into ranked usage rows."""
    rows: Dict[str, dict] = {}
    total = 0
    for key, duration, moment in entries:
        duration = duration or 0
        total += duration
        row = rows.setdefault(key, {label: key, "totalDuration": 0, "count": 0, last_label: moment})
        row["totalDuration"] += duration
        row["count"] += 1
        if moment > row[last_label]:
            row[last_label] = moment

    for row in rows.values():
        row["durationPercentage"] = round(row["totalDuration"] / total * 100, 2) if total else 0.0

    ranked = sorted(rows.values(), key=lambda r: (-r["totalDuration"], r[label]))
    return ranked[:limit]


def get_app_usage_summary(
    storage,
    start: DateLike,
    end: DateLike,
    limit: Optional[int] = 10,
    tz: Optional[tzinfo] = None,
) -> List[dict]:
    """Time per application between two dates (inclusive), longest first.

    Each row holds ``appName``, ``totalDuration`` (seconds), ``count`` of
    focus sessions, ``lastUsed`` (latest session start) and
    ``durationPercentage`` of all app time in the range.
    """
    range_start, range_end = _day_bounds(start, end, tz)
    records = storage.find(RecordKind.APP, range_start, range_end)
    return _usage_summary(
        ((r.app_name, r.duration, r.start_time) for r in records),
        "appName", "lastUsed", limit,
    )


def get_website_summary(
    storage,
    start: DateLike,
    end: DateLike,
    limit: Optional[int] = 10,
    tz: Optional[tzinfo] = None,
) -> List[dict]:
    """Time per website hostname between two dates (inclusive), longest first."""
    range_start, range_end = _day_bounds(start, end, tz)
    records = storage.find(RecordKind.WEB, range_start, range_end)
    return _usage_summary(
        ((domain_of(r.url) or r.url, r.duration, r.timestamp) for r in records),
        "domain", "lastVisited", limit,
    )


def get_daily_summary(storage, day: DateLike, tz: Optional[tzinfo] = None) -> dict:
    """App and website usage plus capture counts for a single day."""
    day = parse_date(day)
    tz = tz or local_tz()
    start, end = start_of_day(day, tz), end_of_day(day, tz)

    apps = get_app_usage_summary(storage, day, day, limit=None, tz=tz)
    return {
        "date": day.isoformat(),
        "totalDuration": sum(app["totalDuration"] for app in apps),
        "appUsage": apps[:10],
        "webUsage": get_website_summary(storage, day, day, tz=tz),
        "screenshots": storage.count(RecordKind.SCREENSHOT, start, end),
        "audioRecordings": storage.count(RecordKind.AUDIO, start, end),
    }


def get_activity_counts(storage) -> Dict[str, int]:
    """All-time number of records of each kind."""
    return {kind.value: storage.count(kind) for kind in RecordKind}
