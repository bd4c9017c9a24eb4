"""
Event Reconciler
================

Translates vendor lifecycle events for one room into TrackRegistry,
ParticipantRecord and RoomRecord mutations. Every event goes through
``handle``, which never raises: malformed payloads and events racing with
teardown are logged and dropped so a single bad event cannot break the
updates of unrelated tracks.
"""

import logging
from typing import Callable, Dict, Optional, Union

from events import (
    ParticipantEvent,
    ParticipantEventKind,
    RoomEvent,
    RoomEventKind,
    TrackEvent,
    TrackEventKind,
    TrackInfo,
)
from presentation import RoomObserver
from room_state import ConnectionState, ParticipantRecord, RoomRecord
from track_registry import (
    DuplicateTrackError,
    LifecycleState,
    ReadyState,
    TrackKind,
    TrackOrigin,
    TrackRecord,
    TrackRegistry,
    UnknownTrackError,
    snapshot_settings,
)

logger = logging.getLogger("event_reconciler")

Event = Union[TrackEvent, ParticipantEvent, RoomEvent]


class VendorEventPayloadError(Exception):
    """Raised for malformed or unexpected vendor event data"""

    pass


_PARTICIPANT_STATES: Dict[ParticipantEventKind, ConnectionState] = {
    ParticipantEventKind.CONNECTED: ConnectionState.CONNECTED,
    ParticipantEventKind.RECONNECTING: ConnectionState.RECONNECTING,
    ParticipantEventKind.RECONNECTED: ConnectionState.CONNECTED,
}


class EventReconciler:
    """
    Applies events for a single room in arrival order.

    Args:
        room: The RoomRecord this reconciler owns
        registry: Track registry shared with the stats sampler
        observer: Presentation observer for participant and room changes
        on_disconnected: Called with the room SID when the vendor reports
            the room disconnected (the supervisor's teardown hook)
    """

    def __init__(
        self,
        room: RoomRecord,
        registry: TrackRegistry,
        observer: Optional[RoomObserver] = None,
        on_disconnected: Optional[Callable[[str], None]] = None,
    ):
        self.room = room
        self.registry = registry
        self.observer = observer if observer is not None else RoomObserver()
        self.on_disconnected = on_disconnected
        self.closed = False

        self._track_handlers = {
            TrackEventKind.STARTED: self._track_started,
            TrackEventKind.STOPPED: self._track_stopped,
            TrackEventKind.ENABLED: lambda e: self._set_flag(e, "enabled", True),
            TrackEventKind.DISABLED: lambda e: self._set_flag(e, "enabled", False),
            TrackEventKind.MUTED: lambda e: self._set_flag(e, "muted", True),
            TrackEventKind.UNMUTED: lambda e: self._set_flag(e, "muted", False),
            TrackEventKind.DIMENSIONS_CHANGED: self._track_dimensions_changed,
            TrackEventKind.SWITCHED_OFF: self._track_switched_off,
            TrackEventKind.SWITCHED_ON: self._track_switched_on,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, event: Event) -> bool:
        """
        Reconcile one event. Returns True when the event was applied.
        """
        if self.closed:
            logger.debug(f"Room {self.room.sid} closed, ignoring {event!r}")
            return False

        try:
            if isinstance(event, TrackEvent):
                self._reconcile_track_event(event)
            elif isinstance(event, ParticipantEvent):
                self._reconcile_participant_event(event)
            elif isinstance(event, RoomEvent):
                self._reconcile_room_event(event)
            else:
                raise VendorEventPayloadError(
                    f"Unsupported event type: {type(event).__name__}"
                )
            return True

        except VendorEventPayloadError as e:
            logger.warning(f"⚠️ Dropping malformed event in room {self.room.sid}: {e}")
        except UnknownTrackError as e:
            # Expected when events race with unpublish or teardown
            logger.debug(f"Ignoring event for retired track: {e}")
        except DuplicateTrackError as e:
            logger.warning(f"⚠️ Duplicate track registration in room {self.room.sid}: {e}")
        except Exception as e:
            logger.error(
                f"❌ Failed to reconcile {type(event).__name__} in room {self.room.sid}: {e}",
                exc_info=True,
            )
        return False

    def close(self):
        self.closed = True

    # ------------------------------------------------------------------
    # Track events
    # ------------------------------------------------------------------

    def _reconcile_track_event(self, event: TrackEvent):
        handler = self._track_handlers.get(event.kind)
        if handler is None:
            raise VendorEventPayloadError(f"Unknown track event kind: {event.kind!r}")
        if not isinstance(event.track_sid, str) or not event.track_sid:
            raise VendorEventPayloadError(f"Track event {event.kind} has no track SID")
        if not self.owns_track(event.track_sid):
            raise UnknownTrackError(
                f"Track {event.track_sid} does not belong to room {self.room.sid}"
            )
        handler(event)

    def owns_track(self, track_sid: str) -> bool:
        if track_sid in self.room.local_tracks:
            return True
        return self.room.participant_for_track(track_sid) is not None

    def _track_started(self, event: TrackEvent):
        def mutate(record: TrackRecord):
            record.lifecycle_state = LifecycleState.STARTED
            record.ready_state = ReadyState.LIVE
            if event.media_track_id:
                record.media_track_id = event.media_track_id
            if event.settings is not None:
                record.settings = snapshot_settings(event.settings)

        self.registry.update(event.track_sid, mutate)

    def _track_stopped(self, event: TrackEvent):
        def mutate(record: TrackRecord):
            record.lifecycle_state = LifecycleState.STOPPED
            record.ready_state = ReadyState.ENDED

        self.registry.update(event.track_sid, mutate)

    def _set_flag(self, event: TrackEvent, attribute: str, value: bool):
        self.registry.update(
            event.track_sid, lambda record: setattr(record, attribute, value)
        )

    def _track_dimensions_changed(self, event: TrackEvent):
        if event.settings is None:
            raise VendorEventPayloadError(
                f"dimensionsChanged for {event.track_sid} carries no settings"
            )
        settings = snapshot_settings(event.settings)

        def mutate(record: TrackRecord):
            record.settings.update(settings)

        self.registry.update(event.track_sid, mutate)

    def _require_remote(self, event: TrackEvent):
        record = self.registry.get(event.track_sid)
        if record is None:
            raise UnknownTrackError(f"Track {event.track_sid} is not registered")
        if not record.is_remote:
            raise VendorEventPayloadError(
                f"{event.kind.value} received for local track {event.track_sid}"
            )

    def _track_switched_off(self, event: TrackEvent):
        self._require_remote(event)

        def mutate(record: TrackRecord):
            record.switched_off = True
            record.switch_off_reason = event.reason

        self.registry.update(event.track_sid, mutate)

    def _track_switched_on(self, event: TrackEvent):
        self._require_remote(event)

        def mutate(record: TrackRecord):
            record.switched_off = False
            record.switch_off_reason = None

        self.registry.update(event.track_sid, mutate)

    # ------------------------------------------------------------------
    # Participant events
    # ------------------------------------------------------------------

    def _reconcile_participant_event(self, event: ParticipantEvent):
        if not isinstance(event.kind, ParticipantEventKind):
            raise VendorEventPayloadError(f"Unknown participant event kind: {event.kind!r}")
        if not event.participant_sid:
            raise VendorEventPayloadError(f"Participant event {event.kind} has no SID")

        if event.kind is ParticipantEventKind.DISCONNECTED:
            self._retire_participant(event.participant_sid)
        elif event.kind in _PARTICIPANT_STATES:
            participant = self._ensure_participant(event.participant_sid, event.identity)
            participant.connection_state = _PARTICIPANT_STATES[event.kind]
            self._participant_changed(participant)
        elif event.kind is ParticipantEventKind.TRACK_SUBSCRIBED:
            self._track_subscribed(event)
        elif event.kind is ParticipantEventKind.TRACK_UNSUBSCRIBED:
            self._track_unsubscribed(event)

    def _ensure_participant(
        self, participant_sid: str, identity: Optional[str]
    ) -> ParticipantRecord:
        participant = self.room.participants.get(participant_sid)
        if participant is not None:
            return participant
        if not identity:
            raise VendorEventPayloadError(
                f"Unknown participant {participant_sid} and no identity to create it"
            )
        participant = ParticipantRecord(identity=identity, sid=participant_sid)
        self.room.participants[participant_sid] = participant
        logger.info(f"👋 Participant joined {self.room.sid}: {identity}")
        return participant

    def _track_subscribed(self, event: ParticipantEvent):
        info = self._require_track_info(event.track)
        participant = self._ensure_participant(event.participant_sid, event.identity)

        record = TrackRecord(
            sid=info.sid,
            kind=info.kind,
            origin=TrackOrigin.REMOTE,
            name=info.name,
            media_track_id=info.media_track_id,
            participant_sid=participant.sid,
            enabled=info.enabled,
            muted=info.muted,
            ready_state=ReadyState.LIVE if info.media_track_id else ReadyState.UNKNOWN,
            settings=snapshot_settings(info.settings),
        )
        self.registry.register(info.sid, record)
        participant.tracks.add(info.sid)
        logger.info(f"🎧 Subscribed to {info.kind.value} track {info.sid} from {participant.identity}")
        self._participant_changed(participant)

    def _track_unsubscribed(self, event: ParticipantEvent):
        track_sid = event.track_sid or (event.track.sid if event.track else None)
        if not track_sid:
            raise VendorEventPayloadError("trackUnsubscribed without a track SID")

        participant = self.room.participants.get(event.participant_sid)
        if participant is None or track_sid not in participant.tracks:
            raise UnknownTrackError(
                f"Track {track_sid} is not held by participant {event.participant_sid}"
            )
        self.registry.remove(track_sid)
        participant.tracks.discard(track_sid)
        logger.info(f"🎧 Unsubscribed from track {track_sid} of {participant.identity}")
        self._participant_changed(participant)

    def _retire_participant(self, participant_sid: str):
        participant = self.room.participants.get(participant_sid)
        if participant is None:
            logger.debug(f"Participant {participant_sid} already retired")
            return

        participant.connection_state = ConnectionState.DISCONNECTED
        del self.room.participants[participant_sid]
        for track_sid in list(participant.tracks):
            self.registry.remove(track_sid)
            participant.tracks.discard(track_sid)
        logger.info(f"👋 Participant left {self.room.sid}: {participant.identity}")

        self._participant_changed(participant)
        self._notify_participant(participant_sid, None)

    def _participant_changed(self, participant: ParticipantRecord):
        self._notify_participant(participant.sid, participant)

    def _notify_participant(self, participant_sid: str, record: Optional[ParticipantRecord]):
        try:
            self.observer.on_participant_changed(self.room.sid, participant_sid, record)
        except Exception as e:
            logger.error(f"❌ Presentation failed to render participant {participant_sid}: {e}")

    # ------------------------------------------------------------------
    # Room events
    # ------------------------------------------------------------------

    def _reconcile_room_event(self, event: RoomEvent):
        kind = event.kind
        if not isinstance(kind, RoomEventKind):
            raise VendorEventPayloadError(f"Unknown room event kind: {kind!r}")

        if kind is RoomEventKind.PARTICIPANT_CONNECTED:
            if not event.participant_sid:
                raise VendorEventPayloadError("participantConnected without a SID")
            participant = self._ensure_participant(event.participant_sid, event.identity)
            self._participant_changed(participant)
            self._room_changed()
        elif kind is RoomEventKind.PARTICIPANT_DISCONNECTED:
            if not event.participant_sid:
                raise VendorEventPayloadError("participantDisconnected without a SID")
            self._retire_participant(event.participant_sid)
            self._room_changed()
        elif kind is RoomEventKind.LOCAL_TRACK_PUBLISHED:
            self._local_track_published(self._require_track_info(event.track))
        elif kind is RoomEventKind.LOCAL_TRACK_UNPUBLISHED:
            track_sid = event.track_sid or (event.track.sid if event.track else None)
            if not track_sid:
                raise VendorEventPayloadError("localTrackUnpublished without a track SID")
            self.registry.remove(track_sid)
            self.room.local_tracks.discard(track_sid)
            self._room_changed()
        elif kind is RoomEventKind.RECONNECTING:
            self.room.state = ConnectionState.RECONNECTING
            self._room_changed()
        elif kind is RoomEventKind.RECONNECTED:
            self.room.state = ConnectionState.CONNECTED
            self._room_changed()
        elif kind is RoomEventKind.RECORDING_STARTED:
            self.room.is_recording = True
            self._room_changed()
        elif kind is RoomEventKind.RECORDING_STOPPED:
            self.room.is_recording = False
            self._room_changed()
        elif kind is RoomEventKind.DISCONNECTED:
            self._room_disconnected(event)

    def _local_track_published(self, info: TrackInfo):
        record = TrackRecord(
            sid=info.sid,
            kind=info.kind,
            origin=TrackOrigin.LOCAL,
            name=info.name,
            media_track_id=info.media_track_id,
            enabled=info.enabled,
            muted=info.muted,
            settings=snapshot_settings(info.settings),
        )
        self.registry.register(info.sid, record)
        self.room.local_tracks.add(info.sid)
        logger.info(f"📢 Local {info.kind.value} track {info.sid} published in {self.room.sid}")
        self._room_changed()

    def _room_disconnected(self, event: RoomEvent):
        self.room.state = ConnectionState.DISCONNECTED
        if event.error:
            logger.error(f"❌ Room {self.room.sid} disconnected with error: {event.error}")
        else:
            logger.info(f"🔌 Room {self.room.sid} disconnected")
        self._room_changed()

        if self.on_disconnected is not None:
            self.on_disconnected(self.room.sid)

    def _room_changed(self):
        try:
            self.observer.on_room_changed(self.room.sid, self.room)
        except Exception as e:
            logger.error(f"❌ Presentation failed to render room {self.room.sid}: {e}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self):
        """Retire every participant and local track of the room."""
        for participant_sid in list(self.room.participants):
            try:
                self._retire_participant(participant_sid)
            except Exception as e:
                logger.error(f"❌ Failed to retire participant {participant_sid}: {e}")

        for track_sid in list(self.room.local_tracks):
            self.registry.remove(track_sid)
            self.room.local_tracks.discard(track_sid)

    @staticmethod
    def _require_track_info(track: Optional[TrackInfo]) -> TrackInfo:
        if not isinstance(track, TrackInfo):
            raise VendorEventPayloadError("Event carries no track description")
        if not track.sid:
            raise VendorEventPayloadError("Track description has no SID")
        if not isinstance(track.kind, TrackKind):
            raise VendorEventPayloadError(f"Unknown track kind: {track.kind!r}")
        return track
