"""
Room/Participant Supervisor
===========================

Owns the set of joined rooms. Each joined room gets exactly one
EventReconciler and one StatsSampler; leaving a room (locally or because
the vendor reported it disconnected, whichever comes first) stops the
sampler, retires every participant and track of the room and unregisters
it exactly once.

All calls are expected on the event loop thread; the per-room ``active``
flag is checked and cleared in the same synchronous step, so a room can
never be torn down twice or run two samplers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from config import STATS_INTERVAL_SECONDS
from event_reconciler import Event, EventReconciler
from presentation import MonitorContext
from room_state import RoomRecord
from stats_sampler import FetchStats, StatsSampler
from track_registry import TrackRecord, TrackRegistry

logger = logging.getLogger("supervisor")


class RoomSupervisorError(Exception):
    """Base exception for supervisor errors"""

    pass


class RoomAlreadyJoinedError(RoomSupervisorError):
    """Raised when joining a room that already has a live session"""

    pass


@dataclass
class RoomSession:
    """Everything the supervisor owns for one joined room"""

    record: RoomRecord
    reconciler: EventReconciler
    sampler: StatsSampler
    joined_at: datetime
    active: bool = True


class RoomSupervisor:
    """
    Joins and leaves rooms, wiring reconciler and sampler per room.

    Args:
        context: Explicit monitor context (observer and event log)
        registry: Track registry; a fresh one is created when omitted
        interval: Stats sampling interval in seconds
    """

    def __init__(
        self,
        context: Optional[MonitorContext] = None,
        registry: Optional[TrackRegistry] = None,
        interval: float = STATS_INTERVAL_SECONDS,
    ):
        self.context = context if context is not None else MonitorContext()
        self.registry = registry if registry is not None else TrackRegistry()
        self.registry.set_observer(self._on_track_changed)
        self.interval = interval

        # Joined rooms keyed by room SID
        self.active_sessions: Dict[str, RoomSession] = {}

    def _on_track_changed(
        self, sid: str, old: Optional[TrackRecord], new: Optional[TrackRecord]
    ):
        try:
            self.context.observer.on_track_changed(sid, new)
        except Exception as e:
            logger.error(f"❌ Presentation failed to render track {sid}: {e}")

    def join(
        self,
        room_sid: str,
        fetch_stats: FetchStats,
        name: str = "",
        local_identity: str = "",
        is_recording: bool = False,
    ) -> EventReconciler:
        """
        Register a room, wire its reconciler and start its stats sampler.

        Args:
            room_sid (str): Vendor room SID
            fetch_stats: Coroutine function returning the room's StatsReport
            name (str): Room name for display
            local_identity (str): Identity of the local participant
            is_recording (bool): Recording state at join time

        Returns:
            EventReconciler: The reconciler events for this room go through

        Raises:
            RoomAlreadyJoinedError: If the room already has a live session
        """
        if room_sid in self.active_sessions:
            raise RoomAlreadyJoinedError(f"Room {room_sid} is already joined")

        record = RoomRecord(
            sid=room_sid,
            name=name,
            local_identity=local_identity,
            is_recording=is_recording,
        )
        reconciler = EventReconciler(
            record,
            self.registry,
            observer=self.context.observer,
            on_disconnected=self.leave,
        )
        sampler = StatsSampler(
            room_sid,
            fetch_stats,
            self.registry,
            interval=self.interval,
            owns_track=reconciler.owns_track,
        )
        self.active_sessions[room_sid] = RoomSession(
            record=record,
            reconciler=reconciler,
            sampler=sampler,
            joined_at=datetime.now(),
        )

        self.context.event_log.log(f'Joined {room_sid} as "{local_identity}"')
        self._notify_room(room_sid, record)
        sampler.start()
        return reconciler

    def dispatch(self, room_sid: str, event: Event) -> bool:
        """Route an event to the room's reconciler. Ignored once the room is left."""
        session = self.active_sessions.get(room_sid)
        if session is None or not session.active:
            logger.debug(f"Ignoring event for room {room_sid} that is not joined")
            return False
        return session.reconciler.handle(event)

    def leave(self, room_sid: str) -> bool:
        """
        Tear a room down. Safe to call repeatedly and after a vendor
        disconnect was already processed; only the first call has effect.
        """
        session = self.active_sessions.get(room_sid)
        if session is None or not session.active:
            logger.debug(f"Room {room_sid} already left")
            return False
        session.active = False

        logger.info(f"🔌 Leaving room {room_sid}")
        session.sampler.stop()
        session.reconciler.teardown()
        session.reconciler.close()
        del self.active_sessions[room_sid]

        self.context.event_log.log(
            f'Left {room_sid} as "{session.record.local_identity}"'
        )
        self._notify_room(room_sid, None)
        return True

    def leave_all(self):
        logger.info("🧹 Leaving all rooms...")
        for room_sid in list(self.active_sessions.keys()):
            self.leave(room_sid)

    def _notify_room(self, room_sid: str, record: Optional[RoomRecord]):
        try:
            self.context.observer.on_room_changed(room_sid, record)
        except Exception as e:
            logger.error(f"❌ Presentation failed to render room {room_sid}: {e}")

    def is_active(self, room_sid: str) -> bool:
        session = self.active_sessions.get(room_sid)
        return session is not None and session.active

    def get_room(self, room_sid: str) -> Optional[RoomRecord]:
        session = self.active_sessions.get(room_sid)
        return session.record if session else None

    def get_sampler(self, room_sid: str) -> Optional[StatsSampler]:
        session = self.active_sessions.get(room_sid)
        return session.sampler if session else None

    def rooms(self) -> List[RoomRecord]:
        return [session.record for session in self.active_sessions.values()]
