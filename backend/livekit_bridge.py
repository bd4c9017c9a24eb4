"""
LiveKit Bridge
==============

Connects a LiveKit ``rtc.Room`` to the supervisor:

- RoomEventBridge registers room event handlers and forwards each callback
  as a TrackEvent / ParticipantEvent / RoomEvent for the room's reconciler
- fetch_room_stats builds the aggregate StatsReport the sampler polls,
  from ``track.get_stats()`` of every local and subscribed remote track
"""

import time
import inspect
import logging
from typing import Any, Dict, List, Optional, Tuple

from livekit import rtc

from event_reconciler import VendorEventPayloadError
from events import (
    ParticipantEvent,
    ParticipantEventKind,
    RoomEvent,
    RoomEventKind,
    TrackEvent,
    TrackEventKind,
    TrackInfo,
)
from stats_sampler import StatsFetchError, StatsReport, TrackStatSample
from track_registry import TrackKind

logger = logging.getLogger("livekit_bridge")

# Publication attributes surfaced as track settings when present
PUBLICATION_SETTINGS = ("width", "height", "mime_type", "simulcasted", "source")


def track_kind_from_livekit(kind: Any) -> TrackKind:
    if kind == rtc.TrackKind.KIND_AUDIO:
        return TrackKind.AUDIO
    if kind == rtc.TrackKind.KIND_VIDEO:
        return TrackKind.VIDEO
    raise VendorEventPayloadError(f"Unsupported LiveKit track kind: {kind!r}")


def publication_settings(publication: Any) -> Dict[str, Any]:
    settings = {}
    for attribute in PUBLICATION_SETTINGS:
        value = getattr(publication, attribute, None)
        if value is None or value == "":
            continue
        # Protobuf enums come through as ints
        settings[attribute] = value
    return settings


def track_info_from_livekit(publication: Any, track: Optional[Any] = None) -> TrackInfo:
    """
    Describe a LiveKit publication (and its track, when subscribed).

    Raises:
        VendorEventPayloadError: If the publication has no SID or an unknown kind
    """
    track = track if track is not None else getattr(publication, "track", None)
    sid = getattr(publication, "sid", None) or getattr(track, "sid", None)
    if not sid:
        raise VendorEventPayloadError("LiveKit publication has no SID")

    kind = getattr(publication, "kind", None)
    if kind is None and track is not None:
        kind = getattr(track, "kind", None)

    muted = bool(getattr(publication, "muted", False))
    return TrackInfo(
        sid=sid,
        kind=track_kind_from_livekit(kind),
        name=getattr(publication, "name", "") or getattr(track, "name", "") or "",
        muted=muted,
        enabled=True,
        settings=publication_settings(publication),
    )


async def resolve_room_sid(room: Any) -> str:
    """Room SID, awaiting it on SDK versions that expose it asynchronously."""
    sid = room.sid
    if inspect.isawaitable(sid):
        sid = await sid
    return sid


def _participant_and_publication(first: Any, second: Any) -> Tuple[Any, Any]:
    # track_muted/track_unmuted argument order differs across SDK versions
    if hasattr(first, "identity"):
        return first, second
    return second, first


class RoomEventBridge:
    """
    Forward LiveKit room callbacks to the supervisor for one room.

    Args:
        room: Connected ``rtc.Room``
        supervisor: RoomSupervisor the room was joined on
        room_sid: SID the room was joined under
    """

    def __init__(self, room: Any, supervisor: Any, room_sid: str):
        self.room = room
        self.supervisor = supervisor
        self.room_sid = room_sid
        self.attached = False

    def _dispatch(self, event):
        self.supervisor.dispatch(self.room_sid, event)

    def _local_identity(self) -> Optional[str]:
        local = getattr(self.room, "local_participant", None)
        return getattr(local, "identity", None)

    def attach(self, seed: bool = True):
        """Register event handlers, then replay the room's current state."""
        if self.attached:
            return
        self.attached = True
        room = self.room

        @room.on("participant_connected")
        def on_participant_connected(participant):
            self._forward(self._participant_connected, participant)

        @room.on("participant_disconnected")
        def on_participant_disconnected(participant):
            self._forward(self._participant_disconnected, participant)

        @room.on("track_subscribed")
        def on_track_subscribed(track, publication, participant):
            self._forward(self._track_subscribed, track, publication, participant)

        @room.on("track_unsubscribed")
        def on_track_unsubscribed(track, publication, participant):
            self._forward(self._track_unsubscribed, track, publication, participant)

        @room.on("track_muted")
        def on_track_muted(first, second):
            self._forward(self._track_muted, first, second, True)

        @room.on("track_unmuted")
        def on_track_unmuted(first, second):
            self._forward(self._track_muted, first, second, False)

        @room.on("local_track_published")
        def on_local_track_published(publication, track):
            self._forward(self._local_track_published, publication, track)

        @room.on("local_track_unpublished")
        def on_local_track_unpublished(publication):
            self._forward(self._local_track_unpublished, publication)

        @room.on("reconnecting")
        def on_reconnecting():
            self._dispatch(RoomEvent(RoomEventKind.RECONNECTING))

        @room.on("reconnected")
        def on_reconnected():
            self._dispatch(RoomEvent(RoomEventKind.RECONNECTED))

        @room.on("disconnected")
        def on_disconnected(reason=None):
            error = None if reason is None else str(reason)
            self._dispatch(RoomEvent(RoomEventKind.DISCONNECTED, error=error))

        logger.info(f"📡 Event handlers registered for room {self.room_sid}")
        if seed:
            self.seed()

    def _forward(self, handler, *args):
        try:
            handler(*args)
        except VendorEventPayloadError as e:
            logger.warning(f"⚠️ Dropping LiveKit event for room {self.room_sid}: {e}")
        except Exception as e:
            logger.error(f"❌ Failed to forward LiveKit event for room {self.room_sid}: {e}")

    def seed(self):
        """Replay participants and tracks already present in the room."""
        local = getattr(self.room, "local_participant", None)
        if local is not None:
            for publication in list(local.track_publications.values()):
                self._forward(self._local_track_published, publication, publication.track)

        for participant in list(self.room.remote_participants.values()):
            self._forward(self._participant_connected, participant)
            for publication in list(participant.track_publications.values()):
                if publication.track is not None:
                    self._forward(
                        self._track_subscribed, publication.track, publication, participant
                    )

    def _participant_connected(self, participant):
        self._dispatch(
            RoomEvent(
                RoomEventKind.PARTICIPANT_CONNECTED,
                participant_sid=participant.sid,
                identity=participant.identity,
            )
        )

    def _participant_disconnected(self, participant):
        self._dispatch(
            RoomEvent(
                RoomEventKind.PARTICIPANT_DISCONNECTED,
                participant_sid=participant.sid,
                identity=participant.identity,
            )
        )

    def _track_subscribed(self, track, publication, participant):
        info = track_info_from_livekit(publication, track)
        self._dispatch(
            ParticipantEvent(
                ParticipantEventKind.TRACK_SUBSCRIBED,
                participant_sid=participant.sid,
                identity=participant.identity,
                track=info,
            )
        )
        # A subscribed LiveKit track is already receiving media
        self._dispatch(TrackEvent(TrackEventKind.STARTED, info.sid, settings=info.settings))

    def _track_unsubscribed(self, track, publication, participant):
        sid = getattr(publication, "sid", None) or getattr(track, "sid", None)
        self._dispatch(
            ParticipantEvent(
                ParticipantEventKind.TRACK_UNSUBSCRIBED,
                participant_sid=participant.sid,
                track_sid=sid,
            )
        )

    def _track_muted(self, first, second, muted: bool):
        participant, publication = _participant_and_publication(first, second)
        kind = TrackEventKind.MUTED if muted else TrackEventKind.UNMUTED
        self._dispatch(TrackEvent(kind, publication.sid))

    def _local_track_published(self, publication, track):
        info = track_info_from_livekit(publication, track)
        self._dispatch(RoomEvent(RoomEventKind.LOCAL_TRACK_PUBLISHED, track=info))
        self._dispatch(TrackEvent(TrackEventKind.STARTED, info.sid, settings=info.settings))

    def _local_track_unpublished(self, publication):
        self._dispatch(
            RoomEvent(RoomEventKind.LOCAL_TRACK_UNPUBLISHED, track_sid=publication.sid)
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sum_track_bytes(stats: List[Any], outbound: bool) -> Optional[Tuple[int, int]]:
    """Total bytes and latest timestamp across the RTP streams of one track."""
    total = 0
    timestamp = 0
    found = False
    for stat in stats:
        which = stat.WhichOneof("stats")
        if outbound and which == "outbound_rtp":
            rtp = stat.outbound_rtp
            total += rtp.sent.bytes_sent
        elif not outbound and which == "inbound_rtp":
            rtp = stat.inbound_rtp
            total += rtp.inbound.bytes_received
        else:
            continue
        found = True
        timestamp = max(timestamp, int(rtp.rtc.timestamp))
    if not found:
        return None
    return total, timestamp or _now_ms()


async def _sample_publication(publication: Any, outbound: bool) -> Optional[TrackStatSample]:
    track = getattr(publication, "track", None)
    if track is None:
        return None
    try:
        stats = await track.get_stats()
        totals = _sum_track_bytes(stats, outbound)
    except Exception as e:
        # Left out of this report; its last value stays on display
        logger.debug(f"No stats for track {publication.sid}: {e}")
        return None
    if totals is None:
        return None
    total, timestamp = totals
    return TrackStatSample(track_sid=publication.sid, bytes=total, timestamp_ms=timestamp)


async def fetch_room_stats(room: Any) -> StatsReport:
    """
    Build the aggregate statistics report for a LiveKit room.

    Raises:
        StatsFetchError: If the room's participants cannot be enumerated
    """
    try:
        local_publications = list(room.local_participant.track_publications.values())
        remote_publications = [
            publication
            for participant in list(room.remote_participants.values())
            for publication in list(participant.track_publications.values())
        ]
    except Exception as e:
        raise StatsFetchError(f"Cannot enumerate room tracks: {e}") from e

    report = StatsReport()
    for publication, outbound in [(p, True) for p in local_publications] + [
        (p, False) for p in remote_publications
    ]:
        sample = await _sample_publication(publication, outbound)
        if sample is None:
            continue
        is_audio = publication.kind == rtc.TrackKind.KIND_AUDIO
        if outbound:
            group = report.local_audio if is_audio else report.local_video
        else:
            group = report.remote_audio if is_audio else report.remote_video
        group.append(sample)

    return report
