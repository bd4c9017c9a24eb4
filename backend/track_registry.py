"""
Track Registry
==============

Authoritative per-track state for every local and remote media track the
monitor knows about. The registry is a plain mapping from track SID to a
TrackRecord; the presentation layer never owns track state, it only
observes registry changes through a single synchronous observer.
"""

import enum
import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

logger = logging.getLogger("track_registry")

# Settings too large to be worth displaying
EXCLUDED_SETTINGS = ("deviceId", "groupId")


class TrackKind(enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"


class TrackOrigin(enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


class LifecycleState(enum.Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"


class ReadyState(enum.Enum):
    LIVE = "live"
    ENDED = "ended"
    UNKNOWN = "unknown"


class TrackRegistryError(Exception):
    """Base exception for track registry errors"""

    pass


class DuplicateTrackError(TrackRegistryError):
    """Raised when registering a track SID that is already present"""

    pass


class UnknownTrackError(TrackRegistryError):
    """Raised when updating a track SID that is not (or no longer) present"""

    pass


class InvalidTrackRecordError(TrackRegistryError):
    """Raised when a record violates a TrackRecord invariant"""

    pass


class RegistryReentrancyError(TrackRegistryError):
    """Raised when the registry is mutated from inside its observer"""

    pass


@dataclass
class TrackRecord:
    """Snapshot of one media track's state"""

    sid: str
    kind: TrackKind
    origin: TrackOrigin
    name: str = ""
    media_track_id: Optional[str] = None
    participant_sid: Optional[str] = None
    lifecycle_state: LifecycleState = LifecycleState.CREATED
    enabled: bool = True
    muted: bool = False
    ready_state: ReadyState = ReadyState.UNKNOWN
    switched_off: bool = False
    switch_off_reason: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    last_bytes_transferred: int = 0
    last_sample_timestamp_ms: Optional[int] = None
    byte_rate: float = 0.0

    @property
    def is_remote(self) -> bool:
        return self.origin is TrackOrigin.REMOTE

    @property
    def is_stopped(self) -> bool:
        return self.lifecycle_state is LifecycleState.STOPPED

    def label(self) -> str:
        return f"{self.kind.value}:{self.sid}"


def snapshot_settings(settings: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Copy the displayable part of a media settings mapping.

    Scalar values only; deviceId/groupId are dropped and floats are rounded
    to two decimals.
    """
    snapshot: Dict[str, Any] = {}
    if not settings:
        return snapshot

    for key, value in settings.items():
        if key in EXCLUDED_SETTINGS:
            continue
        if isinstance(value, bool) or value is None or isinstance(value, (int, str)):
            snapshot[key] = value
        elif isinstance(value, float):
            snapshot[key] = round(value, 2)
    return snapshot


def _validate(record: TrackRecord):
    if record.origin is TrackOrigin.LOCAL and (
        record.switched_off or record.switch_off_reason is not None
    ):
        raise InvalidTrackRecordError(
            f"Local track {record.sid} cannot carry switched-off state"
        )


TrackObserver = Callable[[str, Optional[TrackRecord], Optional[TrackRecord]], None]


class TrackRegistry:
    """
    Mapping of track SID to TrackRecord with a single change observer.

    The observer is called synchronously as ``observer(sid, old, new)``
    after each successful register (old is None), update, or remove
    (new is None). Mutating the registry from inside the observer raises
    RegistryReentrancyError.
    """

    def __init__(self, observer: Optional[TrackObserver] = None):
        self._records: Dict[str, TrackRecord] = {}
        self._observer = observer
        self._notifying = False

    def set_observer(self, observer: Optional[TrackObserver]):
        self._observer = observer

    def _check_reentrancy(self, operation: str):
        if self._notifying:
            raise RegistryReentrancyError(
                f"Registry {operation} attempted from inside the observer"
            )

    def _notify(
        self, sid: str, old: Optional[TrackRecord], new: Optional[TrackRecord]
    ):
        if self._observer is None:
            return
        self._notifying = True
        try:
            self._observer(sid, old, new)
        finally:
            self._notifying = False

    def register(self, sid: str, record: TrackRecord) -> TrackRecord:
        """
        Insert a new record.

        Raises:
            DuplicateTrackError: If ``sid`` is already registered
        """
        self._check_reentrancy("register")
        if sid in self._records:
            raise DuplicateTrackError(f"Track {sid} is already registered")
        if record.sid != sid:
            record = replace(record, sid=sid)
        _validate(record)

        self._records[sid] = record
        logger.debug(f"➕ Registered {record.origin.value} track {record.label()}")
        self._notify(sid, None, record)
        return record

    def update(self, sid: str, mutator: Callable[[TrackRecord], None]) -> TrackRecord:
        """
        Apply ``mutator`` to a copy of the record and store the result.

        Raises:
            UnknownTrackError: If ``sid`` is not registered
        """
        self._check_reentrancy("update")
        old = self._records.get(sid)
        if old is None:
            raise UnknownTrackError(f"Track {sid} is not registered")

        new = copy.deepcopy(old)
        mutator(new)
        if new.sid != sid:
            raise InvalidTrackRecordError(f"Track {sid} cannot change its SID")
        _validate(new)

        self._records[sid] = new
        self._notify(sid, old, new)
        return new

    def remove(self, sid: str) -> Optional[TrackRecord]:
        """Delete a record. Removing an absent SID is a no-op."""
        self._check_reentrancy("remove")
        old = self._records.pop(sid, None)
        if old is None:
            return None
        logger.debug(f"➖ Removed track {old.label()}")
        self._notify(sid, old, None)
        return old

    def get(self, sid: str) -> Optional[TrackRecord]:
        return self._records.get(sid)

    def find_by_media_id(self, media_track_id: str) -> Optional[TrackRecord]:
        if not media_track_id:
            return None
        for record in self._records.values():
            if record.media_track_id == media_track_id:
                return record
        return None

    def sids(self) -> List[str]:
        return list(self._records.keys())

    def records(self) -> List[TrackRecord]:
        return list(self._records.values())

    def __contains__(self, sid: object) -> bool:
        return sid in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))
