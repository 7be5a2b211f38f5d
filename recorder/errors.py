"""Exception hierarchy shared by the capture loops, store and service facade.

Capture loops contain errors inside a single tick; only user-invoked
operations surface them, and the service facade turns every one of them
into a failed ``Result`` envelope.
"""


class RecorderError(Exception):
    """Base class for all recorder errors."""


class CaptureUnavailable(RecorderError):
    """A capture device or OS API cannot be reached.

    Raised by capture primitives (no display, no microphone, missing
    xdotool). Loops log it and retry on the next tick.
    """


class AlreadyActive(RecorderError):
    """``start()`` was called on a resource that already has a session."""


class AlreadyRecording(AlreadyActive):
    """The microphone is busy; the previous session is being torn down."""


class NotFound(RecorderError):
    """Lookup or delete of a record id that does not exist."""

    def __init__(self, kind, record_id):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class StorageFailure(RecorderError):
    """The record store or filesystem rejected a read or write."""


class EnrichmentFailure(RecorderError):
    """Title/favicon lookup or AI call failed.

    Never surfaced to callers; always degraded to a fallback value.
    """
