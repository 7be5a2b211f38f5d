"""Manual deletion and age-based retention.

Files are always removed before their rows, so a row never points at a file
that was deleted. A file that cannot be removed is reported in the returned
``DeletionReport`` but does not stop the row from being deleted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional

from .errors import NotFound
from .files import remove_file
from .models import RecordKind
from .scheduler import utcnow
from .timeline import DateLike, end_of_day, parse_date, start_of_day

logger = logging.getLogger(__name__)

FILE_KINDS = (RecordKind.SCREENSHOT, RecordKind.AUDIO)


@dataclass
class DeletionReport:
    deleted: int = 0
    by_type: dict = field(default_factory=dict)
    file_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.file_errors

    def merge(self, kind: RecordKind, other: "DeletionReport") -> None:
        self.deleted += other.deleted
        self.by_type[kind.value] = self.by_type.get(kind.value, 0) + other.deleted
        self.file_errors.extend(other.file_errors)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "byType": self.by_type, "fileErrors": self.file_errors}


def delete_item(storage, item_id: int, kind) -> DeletionReport:
    """Delete one record and its file.

    Raises:
        NotFound: If no record of ``kind`` has this id
    """
    kind = RecordKind.parse(kind)
    record = storage.find_by_id(kind, item_id)
    if record is None:
        raise NotFound(kind.value, item_id)

    report = DeletionReport()
    error = remove_file(getattr(record, "path", None))
    if error:
        report.file_errors.append(error)

    if not storage.delete(kind, item_id):
        raise NotFound(kind.value, item_id)
    report.deleted = 1
    report.by_type[kind.value] = 1
    logger.info(f"Deleted {kind.value} {item_id}")
    return report


def _delete_range(storage, kind: RecordKind, start: Optional[datetime], end: datetime) -> DeletionReport:
    report = DeletionReport()
    if kind in FILE_KINDS:
        # rows are deleted one by one so that a record inserted meanwhile
        # is never removed without its file
        for record in storage.find(kind, start, end, descending=False):
            error = remove_file(record.path)
            if error:
                report.file_errors.append(error)
            if storage.delete(kind, record.id):
                report.deleted += 1
    else:
        report.deleted = storage.delete_where(kind, start, end)
    report.by_type[kind.value] = report.deleted
    return report


def delete_items_by_type(storage, day: DateLike, kind, tz: Optional[tzinfo] = None) -> DeletionReport:
    """Delete every record of ``kind`` on calendar day ``day``."""
    kind = RecordKind.parse(kind)
    day = parse_date(day)
    report = _delete_range(storage, kind, start_of_day(day, tz), end_of_day(day, tz))
    logger.info(f"Deleted {report.deleted} {kind.value} record(s) for {day.isoformat()}")
    return report


def delete_all_items(storage, day: DateLike, tz: Optional[tzinfo] = None) -> DeletionReport:
    """Delete every record of every kind on calendar day ``day``."""
    day = parse_date(day)
    start, end = start_of_day(day, tz), end_of_day(day, tz)

    report = DeletionReport()
    for kind in RecordKind:
        report.merge(kind, _delete_range(storage, kind, start, end))
    logger.info(f"Deleted {report.deleted} record(s) for {day.isoformat()}")
    return report


def purge_older_than(storage, days: int, now: Optional[datetime] = None) -> DeletionReport:
    """Delete every record (and file) older than ``days`` days.

    ``days <= 0`` means unlimited retention and deletes nothing.
    """
    report = DeletionReport()
    if days <= 0:
        return report

    cutoff = (now or utcnow()) - timedelta(days=days)
    for kind in RecordKind:
        report.merge(kind, _delete_range(storage, kind, None, cutoff))

    if report.deleted:
        logger.info(f"Retention: removed {report.deleted} record(s) older than {days} days")
    return report
