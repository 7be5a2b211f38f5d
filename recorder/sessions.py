"""Focus/URL session tracking shared by the app monitor and web history loops."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from .dedup import session_boundary


@dataclass
class OpenSession:
    entity: Any
    start_time: datetime


@dataclass
class ClosedSession:
    """A tracked entity together with the span it held focus."""
    entity: Any
    start_time: datetime
    end_time: datetime

    @property
    def duration_seconds(self) -> float:
        return max((self.end_time - self.start_time).total_seconds(), 0.0)


class SessionTracker:
    """Turns a stream of polled observations into closed sessions.

    ``observe`` is called once per tick with the currently detected entity
    (or None when nothing is focused). Whenever the entity changes on any of
    ``match_keys``, the previous session is closed and returned, and a new
    one is opened. The close is always returned before the next open is
    recorded, so callers see a strictly ordered close/open sequence.
    """

    def __init__(self, match_keys: Sequence[str]):
        self.match_keys = tuple(match_keys)
        self.current: Optional[OpenSession] = None

    def observe(self, entity: Any, now: datetime) -> Optional[ClosedSession]:
        previous = self.current.entity if self.current else None
        if not session_boundary(previous, entity, self.match_keys):
            return None

        closed = self.close(now)
        if entity is not None:
            self.current = OpenSession(entity=entity, start_time=now)
        return closed

    def close(self, now: datetime) -> Optional[ClosedSession]:
        """Close the open session, if any, at ``now``."""
        if self.current is None:
            return None
        session = self.current
        self.current = None
        # clock skew must never produce a negative span
        end_time = max(now, session.start_time)
        return ClosedSession(entity=session.entity, start_time=session.start_time, end_time=end_time)

    def reset(self) -> None:
        self.current = None
