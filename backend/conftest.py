"""Shared fixtures and recording fakes for the backend tests."""

import pytest

from presentation import EventLog, MonitorContext, RoomObserver
from room_state import RoomRecord
from stats_sampler import StatsReport
from track_registry import TrackRegistry


class RecordingObserver(RoomObserver):
    """Observer that records every notification, capturing state at call time."""

    def __init__(self):
        self.track_calls = []
        self.participant_calls = []
        self.room_calls = []

    def on_track_changed(self, sid, record):
        self.track_calls.append((sid, record))

    def on_participant_changed(self, room_sid, participant_sid, record):
        state = record.connection_state if record is not None else None
        self.participant_calls.append((participant_sid, state))

    def on_room_changed(self, room_sid, record):
        state = record.state if record is not None else None
        self.room_calls.append((room_sid, state))


class MockStatsSource:
    """Returns queued reports (or raises queued exceptions) on each fetch."""

    def __init__(self, *reports):
        self.reports = list(reports)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if not self.reports:
            return StatsReport()
        item = self.reports.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def registry():
    return TrackRegistry()


@pytest.fixture
def room():
    return RoomRecord(sid="RM_test", name="demo-room", local_identity="alice")


@pytest.fixture
def context(observer):
    return MonitorContext(observer=observer, event_log=EventLog(max_entries=50))
