"""
Reconciler Events
=================

Vendor SDK callbacks are translated into one tagged event type per entity
class (track, participant, room), each with a closed set of kinds, so that
ordering and error containment live in a single reconciliation function.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from track_registry import TrackKind


class TrackEventKind(enum.Enum):
    STARTED = "started"
    STOPPED = "stopped"
    ENABLED = "enabled"
    DISABLED = "disabled"
    MUTED = "muted"
    UNMUTED = "unmuted"
    DIMENSIONS_CHANGED = "dimensionsChanged"
    SWITCHED_OFF = "switchedOff"
    SWITCHED_ON = "switchedOn"


class ParticipantEventKind(enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    DISCONNECTED = "disconnected"
    TRACK_SUBSCRIBED = "trackSubscribed"
    TRACK_UNSUBSCRIBED = "trackUnsubscribed"


class RoomEventKind(enum.Enum):
    PARTICIPANT_CONNECTED = "participantConnected"
    PARTICIPANT_DISCONNECTED = "participantDisconnected"
    LOCAL_TRACK_PUBLISHED = "localTrackPublished"
    LOCAL_TRACK_UNPUBLISHED = "localTrackUnpublished"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    RECORDING_STARTED = "recordingStarted"
    RECORDING_STOPPED = "recordingStopped"
    DISCONNECTED = "disconnected"


@dataclass
class TrackInfo:
    """Vendor-independent description of a track at the time it appears"""

    sid: str
    kind: TrackKind
    name: str = ""
    media_track_id: Optional[str] = None
    muted: bool = False
    enabled: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackEvent:
    kind: TrackEventKind
    track_sid: str
    settings: Optional[Dict[str, Any]] = None
    media_track_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ParticipantEvent:
    kind: ParticipantEventKind
    participant_sid: str
    identity: Optional[str] = None
    track: Optional[TrackInfo] = None
    track_sid: Optional[str] = None


@dataclass
class RoomEvent:
    kind: RoomEventKind
    participant_sid: Optional[str] = None
    identity: Optional[str] = None
    track: Optional[TrackInfo] = None
    track_sid: Optional[str] = None
    error: Optional[str] = None
