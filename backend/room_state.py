"""Participant and room records tracked per joined room."""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set


class ConnectionState(enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass
class ParticipantRecord:
    """A remote participant and the SIDs of its subscribed tracks"""

    identity: str
    sid: str
    connection_state: ConnectionState = ConnectionState.CONNECTED
    tracks: Set[str] = field(default_factory=set)


@dataclass
class RoomRecord:
    """A joined room, its remote participants and its local track SIDs"""

    sid: str
    name: str = ""
    local_identity: str = ""
    state: ConnectionState = ConnectionState.CONNECTED
    is_recording: bool = False
    participants: Dict[str, ParticipantRecord] = field(default_factory=dict)
    local_tracks: Set[str] = field(default_factory=set)

    def participant_for_track(self, track_sid: str) -> Optional[ParticipantRecord]:
        for participant in self.participants.values():
            if track_sid in participant.tracks:
                return participant
        return None

    def all_track_sids(self) -> List[str]:
        sids = list(self.local_tracks)
        for participant in self.participants.values():
            sids.extend(participant.tracks)
        return sids
