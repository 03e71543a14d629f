"""
Error taxonomy for the playback core
"""
from enum import Enum


class TuneQueueError(Exception):
    """Base class for every error raised by tunequeue."""


class ResolutionError(TuneQueueError):
    """A query could not be resolved for reasons other than "no results"."""


class AcquisitionErrorKind(Enum):
    """Why a resolved track's stream could not be opened."""
    UNAVAILABLE = "unavailable"
    PRIVATE = "private"
    REGION_LOCKED = "region_locked"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class AcquisitionError(TuneQueueError):
    """The sink could not open a stream for a track."""

    def __init__(self, kind: AcquisitionErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class TransportError(TuneQueueError):
    """The voice transport could not be established or failed."""
