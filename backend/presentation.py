"""
Presentation Layer
==================

Observers that render track, participant and room state. The registry and
reconciler push changes here; nothing in this module writes back into
them. ConsoleRoomView renders to the terminal through logging, EventLog is
the explicit replacement for a page-global log panel, and MonitorContext
owns both for the lifetime of a monitoring session.
"""

import logging
import datetime
from collections import deque
from typing import Deque, List, Optional, Tuple

from room_state import ConnectionState, ParticipantRecord, RoomRecord
from track_registry import ReadyState, TrackRecord


class RoomObserver:
    """Receives state changes synchronously after each mutation. No-op by default."""

    def on_track_changed(self, sid: str, record: Optional[TrackRecord]):
        pass

    def on_participant_changed(
        self, room_sid: str, participant_sid: str, record: Optional[ParticipantRecord]
    ):
        pass

    def on_room_changed(self, room_sid: str, record: Optional[RoomRecord]):
        pass


class EventLog:
    """
    Bounded in-memory log panel that mirrors every entry to logging.

    Args:
        max_entries: Number of entries kept before the oldest are dropped
        logger_name: Logger the entries are forwarded to
    """

    def __init__(self, max_entries: int = 500, logger_name: str = "event_log"):
        self._entries: Deque[Tuple[str, str]] = deque(maxlen=max_entries)
        self.logger = logging.getLogger(logger_name)

    def log(self, *args, level: str = "info"):
        message = ", ".join(str(arg) for arg in args)
        timestamp = datetime.datetime.now().strftime("%H:%M:%S")
        self._entries.append((timestamp, message))

        if level == "warning":
            self.logger.warning(f"⚠️  {message}")
        elif level == "error":
            self.logger.error(f"❌ {message}")
        else:
            self.logger.info(f"ℹ️  {message}")

    def entries(self) -> List[str]:
        return [f"{timestamp} {message}" for timestamp, message in self._entries]

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ConsoleRoomView(RoomObserver):
    """
    Render state changes as log lines, flagging ended tracks, disabled or
    muted tracks, switched-off remote tracks and reconnecting participants.
    """

    state_icons = {
        ConnectionState.CONNECTED: "🟢",
        ConnectionState.RECONNECTING: "🟡",
        ConnectionState.DISCONNECTED: "🔴",
    }

    def __init__(self, event_log: Optional[EventLog] = None, show_rates: bool = True):
        self.event_log = event_log
        self.show_rates = show_rates

        # Set up dedicated logger for the console view
        self.logger = logging.getLogger("console_view")

        # Last rendered text per track, so rate-only ticks stay quiet
        self._rendered: dict = {}

    @staticmethod
    def describe_track(record: TrackRecord) -> str:
        flags = []
        if record.ready_state is ReadyState.ENDED:
            flags.append("⛔ ended")
        if not record.enabled:
            flags.append("⏸️ disabled")
        if record.muted:
            flags.append("🔇 muted")
        if record.is_remote and record.switched_off:
            flags.append(f"📴 switched off ({record.switch_off_reason})")

        summary = (
            f"{record.origin.value} {record.label()} "
            f"[{record.lifecycle_state.value}, readyState={record.ready_state.value}]"
        )
        if flags:
            summary += " " + " ".join(flags)
        return summary

    @staticmethod
    def format_rate(record: TrackRecord) -> str:
        # bytes/ms * 8 == kbit/s
        return f"{round(record.byte_rate * 8, 1)} kbps"

    def on_track_changed(self, sid: str, record: Optional[TrackRecord]):
        if record is None:
            self._rendered.pop(sid, None)
            self.logger.info(f"🗑️  Track {sid} removed")
            return

        description = self.describe_track(record)
        if self._rendered.get(sid) != description:
            self._rendered[sid] = description
            self.logger.info(f"🎞️  {description}")
            if record.settings:
                settings = ", ".join(f"{k}={v}" for k, v in sorted(record.settings.items()))
                self.logger.info(f"    ⚙️  {settings}")
        elif self.show_rates and record.last_sample_timestamp_ms is not None:
            self.logger.debug(f"📈 {record.label()} {self.format_rate(record)}")

    def on_participant_changed(
        self, room_sid: str, participant_sid: str, record: Optional[ParticipantRecord]
    ):
        if record is None:
            self.logger.info(f"👋 Participant {participant_sid} left room {room_sid}")
            if self.event_log is not None:
                self.event_log.log(f"Participant {participant_sid} left {room_sid}")
            return

        icon = self.state_icons.get(record.connection_state, "❓")
        self.logger.info(
            f"👤 {record.identity} ({record.sid}) {icon} {record.connection_state.value} "
            f"- {len(record.tracks)} tracks"
        )

    def on_room_changed(self, room_sid: str, record: Optional[RoomRecord]):
        if record is None:
            self.logger.info(f"🏁 Room {room_sid} torn down")
            if self.event_log is not None:
                self.event_log.log(f"Left {room_sid}")
            return

        icon = self.state_icons.get(record.state, "❓")
        recording = "⏺️ recording" if record.is_recording else "not recording"
        self.logger.info(
            f"🏠 Room {record.name or record.sid} {icon} {record.state.value}, {recording}, "
            f"{len(record.participants)} participants, {len(record.local_tracks)} local tracks"
        )

    def rate_table(self, records: List[TrackRecord]) -> List[str]:
        return [f"{record.label()}: {self.format_rate(record)}" for record in records]


class MonitorContext:
    """
    Explicitly constructed context handed to the supervisor. Owns the
    presentation observer and the event log panel for one session.
    """

    def __init__(
        self,
        observer: Optional[RoomObserver] = None,
        event_log: Optional[EventLog] = None,
    ):
        self.event_log = event_log if event_log is not None else EventLog()
        self.observer = observer if observer is not None else ConsoleRoomView(self.event_log)
        self.is_open = False

    def open(self):
        if self.is_open:
            return
        self.is_open = True
        self.event_log.log("Monitor context opened")

    def close(self):
        if not self.is_open:
            return
        self.event_log.log("Monitor context closed")
        self.is_open = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
