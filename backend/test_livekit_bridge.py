"""Tests for the LiveKit event bridge and stats collection, using mock rooms."""

from types import SimpleNamespace

import pytest
from livekit import rtc

from conftest import MockStatsSource
from events import (
    ParticipantEvent,
    ParticipantEventKind,
    RoomEvent,
    RoomEventKind,
    TrackEvent,
    TrackEventKind,
)
from livekit_bridge import (
    RoomEventBridge,
    fetch_room_stats,
    resolve_room_sid,
    track_info_from_livekit,
)
from event_reconciler import VendorEventPayloadError
from stats_sampler import StatsFetchError
from supervisor import RoomSupervisor
from track_registry import TrackKind


class MockRoom:
    def __init__(self, local_publications=None, remote_participants=None, sid="RM_lk"):
        self.handlers = {}
        self.sid = sid
        self.name = "demo"
        self.local_participant = SimpleNamespace(
            identity="alice", track_publications=local_publications or {}
        )
        self.remote_participants = remote_participants or {}

    def on(self, event_name):
        def decorator(func):
            self.handlers[event_name] = func
            return func

        return decorator

    def emit(self, event_name, *args):
        if event_name in self.handlers:
            self.handlers[event_name](*args)


class MockSupervisor:
    def __init__(self):
        self.events = []

    def dispatch(self, room_sid, event):
        self.events.append((room_sid, event))
        return True


class MockStat:
    def __init__(self, which, byte_count, timestamp):
        self.which = which
        counters = SimpleNamespace(
            sent=SimpleNamespace(bytes_sent=byte_count),
            inbound=SimpleNamespace(bytes_received=byte_count),
            rtc=SimpleNamespace(timestamp=timestamp),
        )
        setattr(self, which, counters)

    def WhichOneof(self, group):
        return self.which


class MockTrack:
    def __init__(self, sid, kind, stats=None, error=None):
        self.sid = sid
        self.kind = kind
        self.name = sid
        self._stats = stats or []
        self._error = error

    async def get_stats(self):
        if self._error:
            raise self._error
        return self._stats


def publication(sid, kind=rtc.TrackKind.KIND_AUDIO, track=None, **kwargs):
    return SimpleNamespace(sid=sid, kind=kind, name=f"{sid}-name", muted=False, track=track, **kwargs)


def participant(sid, identity, publications=None):
    return SimpleNamespace(sid=sid, identity=identity, track_publications=publications or {})


def test_track_info_from_publication():
    pub = publication("TR_1", rtc.TrackKind.KIND_VIDEO, width=1280, height=720, mime_type="")

    info = track_info_from_livekit(pub)

    assert info.sid == "TR_1"
    assert info.kind is TrackKind.VIDEO
    assert info.settings == {"width": 1280, "height": 720}


def test_track_info_rejects_missing_sid_and_unknown_kind():
    with pytest.raises(VendorEventPayloadError):
        track_info_from_livekit(publication(""))
    with pytest.raises(VendorEventPayloadError):
        track_info_from_livekit(publication("TR_1", kind=99))


@pytest.mark.asyncio
async def test_resolve_room_sid_accepts_plain_and_awaitable():
    async def sid():
        return "RM_async"

    assert await resolve_room_sid(SimpleNamespace(sid="RM_plain")) == "RM_plain"
    assert await resolve_room_sid(SimpleNamespace(sid=sid())) == "RM_async"


def test_room_callbacks_are_translated():
    room = MockRoom()
    supervisor = MockSupervisor()
    RoomEventBridge(room, supervisor, "RM_lk").attach(seed=False)

    bob = participant("PA_bob", "bob")
    remote_pub = publication("TR_video", rtc.TrackKind.KIND_VIDEO)
    remote_track = MockTrack("TR_video", rtc.TrackKind.KIND_VIDEO)

    room.emit("participant_connected", bob)
    room.emit("track_subscribed", remote_track, remote_pub, bob)
    room.emit("track_muted", bob, remote_pub)
    room.emit("track_unsubscribed", remote_track, remote_pub, bob)
    room.emit("participant_disconnected", bob)
    room.emit("reconnecting")
    room.emit("reconnected")
    room.emit("disconnected", "CLIENT_INITIATED")

    kinds = [event.kind for _, event in supervisor.events]
    assert kinds == [
        RoomEventKind.PARTICIPANT_CONNECTED,
        ParticipantEventKind.TRACK_SUBSCRIBED,
        TrackEventKind.STARTED,
        TrackEventKind.MUTED,
        ParticipantEventKind.TRACK_UNSUBSCRIBED,
        RoomEventKind.PARTICIPANT_DISCONNECTED,
        RoomEventKind.RECONNECTING,
        RoomEventKind.RECONNECTED,
        RoomEventKind.DISCONNECTED,
    ]
    assert all(room_sid == "RM_lk" for room_sid, _ in supervisor.events)
    assert supervisor.events[-1][1].error == "CLIENT_INITIATED"


def test_malformed_livekit_payload_is_dropped():
    room = MockRoom()
    supervisor = MockSupervisor()
    RoomEventBridge(room, supervisor, "RM_lk").attach(seed=False)

    bad_pub = publication("TR_bad", kind=42)
    room.emit("track_subscribed", MockTrack("TR_bad", 42), bad_pub, participant("PA_bob", "bob"))

    assert supervisor.events == []


def test_seed_replays_existing_state():
    local_pub = publication("TL_audio", track=MockTrack("TL_audio", rtc.TrackKind.KIND_AUDIO))
    remote_pub = publication(
        "TR_video",
        rtc.TrackKind.KIND_VIDEO,
        track=MockTrack("TR_video", rtc.TrackKind.KIND_VIDEO),
    )
    pending_pub = publication("TR_pending", rtc.TrackKind.KIND_AUDIO)
    room = MockRoom(
        local_publications={"TL_audio": local_pub},
        remote_participants={
            "bob": participant("PA_bob", "bob", {"TR_video": remote_pub, "TR_pending": pending_pub})
        },
    )
    supervisor = MockSupervisor()

    RoomEventBridge(room, supervisor, "RM_lk").attach()

    events = [event for _, event in supervisor.events]
    assert isinstance(events[0], RoomEvent)
    assert events[0].kind is RoomEventKind.LOCAL_TRACK_PUBLISHED
    subscribed = [
        e for e in events if isinstance(e, ParticipantEvent)
        and e.kind is ParticipantEventKind.TRACK_SUBSCRIBED
    ]
    assert [e.track.sid for e in subscribed] == ["TR_video"]
    started = [e.track_sid for e in events if isinstance(e, TrackEvent)]
    assert started == ["TL_audio", "TR_video"]


@pytest.mark.asyncio
async def test_bridge_drives_real_supervisor(registry, context):
    room = MockRoom()
    supervisor = RoomSupervisor(context, registry, interval=60)
    supervisor.join("RM_lk", MockStatsSource(), local_identity="alice")
    RoomEventBridge(room, supervisor, "RM_lk").attach()

    bob = participant("PA_bob", "bob")
    remote_pub = publication("TR_audio")
    room.emit("participant_connected", bob)
    room.emit("track_subscribed", MockTrack("TR_audio", rtc.TrackKind.KIND_AUDIO), remote_pub, bob)

    record = registry.get("TR_audio")
    assert record.is_remote
    assert record.lifecycle_state.value == "started"

    room.emit("disconnected")
    assert len(registry) == 0
    assert supervisor.rooms() == []


@pytest.mark.asyncio
async def test_fetch_room_stats_groups_by_origin_and_kind():
    local_audio = publication(
        "TL_audio",
        track=MockTrack(
            "TL_audio",
            rtc.TrackKind.KIND_AUDIO,
            stats=[
                MockStat("outbound_rtp", 600, 5000),
                MockStat("outbound_rtp", 400, 5100),
                MockStat("inbound_rtp", 999, 5200),
            ],
        ),
    )
    broken_local = publication(
        "TL_video",
        rtc.TrackKind.KIND_VIDEO,
        track=MockTrack("TL_video", rtc.TrackKind.KIND_VIDEO, error=RuntimeError("gone")),
    )
    remote_video = publication(
        "TR_video",
        rtc.TrackKind.KIND_VIDEO,
        track=MockTrack(
            "TR_video", rtc.TrackKind.KIND_VIDEO, stats=[MockStat("inbound_rtp", 2048, 7000)]
        ),
    )
    unsubscribed = publication("TR_audio")
    room = MockRoom(
        local_publications={"TL_audio": local_audio, "TL_video": broken_local},
        remote_participants={
            "bob": participant("PA_bob", "bob", {"TR_video": remote_video, "TR_audio": unsubscribed})
        },
    )

    report = await fetch_room_stats(room)

    assert len(report) == 2
    assert report.local_audio[0].track_sid == "TL_audio"
    assert report.local_audio[0].bytes == 1000
    assert report.local_audio[0].timestamp_ms == 5100
    assert report.local_video == []
    assert report.remote_video[0].bytes == 2048
    assert report.remote_audio == []


@pytest.mark.asyncio
async def test_fetch_room_stats_fails_when_room_is_gone():
    with pytest.raises(StatsFetchError):
        await fetch_room_stats(SimpleNamespace(remote_participants={}))
