"""Record and timeline data types.

The five persisted record kinds form a closed set keyed by ``RecordKind``.
Timeline items and groups are derived on read and never stored.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class RecordKind(str, Enum):
    """Closed set of record kinds; the value doubles as the timeline item type."""
    SCREENSHOT = "screenshot"
    AUDIO = "audio"
    WEB = "web"
    APP = "app"
    INSIGHT = "insight"

    @classmethod
    def parse(cls, value: Union["RecordKind", str]) -> "RecordKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            options = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown record type {value!r} (expected one of: {options})") from None

    @property
    def rank(self) -> int:
        """Position in declaration order, used as the timeline tie-break."""
        return list(RecordKind).index(self)


@dataclass
class Screenshot:
    id: int
    timestamp: datetime
    path: str
    text_description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AudioRecording:
    id: int
    timestamp: datetime
    path: str
    duration: float = 0.0
    transcript: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AppUsage:
    id: int
    timestamp: datetime
    app_name: str
    window_title: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebHistoryEntry:
    id: int
    timestamp: datetime
    url: str
    title: str
    duration: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AIInsight:
    id: int
    timestamp: datetime
    content: str
    type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


Record = Union[Screenshot, AudioRecording, AppUsage, WebHistoryEntry, AIInsight]

RECORD_TYPES = {
    RecordKind.SCREENSHOT: Screenshot,
    RecordKind.AUDIO: AudioRecording,
    RecordKind.WEB: WebHistoryEntry,
    RecordKind.APP: AppUsage,
    RecordKind.INSIGHT: AIInsight,
}


@dataclass(frozen=True)
class Segment:
    """A ``[start, end]`` span in seconds from the start of a recording."""
    start: float
    end: float

    @property
    def length(self) -> float:
        return self.end - self.start

    def to_dict(self) -> Dict[str, float]:
        return {"start": round(self.start, 3), "end": round(self.end, 3)}


@dataclass
class TimelineItem:
    id: int
    type: RecordKind
    timestamp: datetime
    title: str
    description: str
    duration: Optional[float] = None
    path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def end_time(self) -> datetime:
        """Timestamp extended by the item's duration, if it has one."""
        if self.duration:
            return self.timestamp + timedelta(seconds=self.duration)
        return self.timestamp


@dataclass
class TimelineGroup:
    id: str
    title: str
    items: List[TimelineItem]
    start_time: datetime
    end_time: datetime
    duration: float = 0.0


@dataclass
class Result:
    """Uniform envelope returned by every operation exposed to callers."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "Result":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: Union[Exception, str], data: Any = None) -> "Result":
        if isinstance(error, Exception):
            return cls(success=False, data=data, error=str(error), code=type(error).__name__)
        return cls(success=False, data=data, error=error)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": self.success}
        if self.data is not None:
            payload["data"] = to_jsonable(self.data)
        if self.error is not None:
            payload["error"] = self.error
        if self.code is not None:
            payload["code"] = self.code
        return payload


def to_jsonable(value: Any) -> Any:
    """Convert records, enums and datetimes into JSON-serializable values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Segment):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value
