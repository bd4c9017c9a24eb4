"""Tests for event reconciliation into registry, participant and room records."""

import pytest

from event_reconciler import EventReconciler
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
from room_state import ConnectionState
from track_registry import LifecycleState, ReadyState, TrackKind


@pytest.fixture
def disconnected_rooms():
    return []


@pytest.fixture
def reconciler(room, registry, observer, disconnected_rooms):
    return EventReconciler(
        room, registry, observer=observer, on_disconnected=disconnected_rooms.append
    )


def publish_local(reconciler, sid, kind=TrackKind.AUDIO):
    return reconciler.handle(
        RoomEvent(RoomEventKind.LOCAL_TRACK_PUBLISHED, track=TrackInfo(sid=sid, kind=kind))
    )


def subscribe_remote(reconciler, participant_sid, sid, kind=TrackKind.VIDEO, identity="bob"):
    return reconciler.handle(
        ParticipantEvent(
            ParticipantEventKind.TRACK_SUBSCRIBED,
            participant_sid=participant_sid,
            identity=identity,
            track=TrackInfo(sid=sid, kind=kind, media_track_id=f"mst-{sid}"),
        )
    )


def test_local_publish_registers_track(reconciler, registry, room):
    assert publish_local(reconciler, "TL_audio")

    record = registry.get("TL_audio")
    assert record.lifecycle_state is LifecycleState.CREATED
    assert not record.is_remote
    assert room.local_tracks == {"TL_audio"}


@pytest.mark.parametrize(
    "kind,attribute,value",
    [
        (TrackEventKind.DISABLED, "enabled", False),
        (TrackEventKind.MUTED, "muted", True),
    ],
)
def test_flag_events_set_attribute(reconciler, registry, kind, attribute, value):
    publish_local(reconciler, "TL_audio")

    assert reconciler.handle(TrackEvent(kind, "TL_audio"))
    assert getattr(registry.get("TL_audio"), attribute) is value


def test_started_and_stopped_drive_lifecycle(reconciler, registry):
    publish_local(reconciler, "TL_video", TrackKind.VIDEO)

    reconciler.handle(
        TrackEvent(
            TrackEventKind.STARTED,
            "TL_video",
            settings={"width": 1280, "height": 720, "deviceId": "cam"},
            media_track_id="mst-video",
        )
    )
    record = registry.get("TL_video")
    assert record.lifecycle_state is LifecycleState.STARTED
    assert record.ready_state is ReadyState.LIVE
    assert record.media_track_id == "mst-video"
    assert record.settings == {"width": 1280, "height": 720}

    reconciler.handle(TrackEvent(TrackEventKind.STOPPED, "TL_video"))
    record = registry.get("TL_video")
    assert record.is_stopped
    assert record.ready_state is ReadyState.ENDED


def test_dimensions_changed_merges_settings(reconciler, registry):
    publish_local(reconciler, "TL_video", TrackKind.VIDEO)
    reconciler.handle(TrackEvent(TrackEventKind.STARTED, "TL_video", settings={"width": 640}))

    assert reconciler.handle(
        TrackEvent(TrackEventKind.DIMENSIONS_CHANGED, "TL_video", settings={"height": 360.004})
    )
    assert registry.get("TL_video").settings == {"width": 640, "height": 360.0}

    # No settings attached: dropped, record untouched
    assert not reconciler.handle(TrackEvent(TrackEventKind.DIMENSIONS_CHANGED, "TL_video"))
    assert registry.get("TL_video").settings == {"width": 640, "height": 360.0}


def test_switched_off_applies_to_remote_tracks_only(reconciler, registry):
    publish_local(reconciler, "TL_video", TrackKind.VIDEO)
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    assert reconciler.handle(
        TrackEvent(TrackEventKind.SWITCHED_OFF, "TR_video", reason="BANDWIDTH_CONSTRAINED")
    )
    remote = registry.get("TR_video")
    assert remote.switched_off is True
    assert remote.switch_off_reason == "BANDWIDTH_CONSTRAINED"

    assert not reconciler.handle(TrackEvent(TrackEventKind.SWITCHED_OFF, "TL_video"))
    assert registry.get("TL_video").switched_off is False

    assert reconciler.handle(TrackEvent(TrackEventKind.SWITCHED_ON, "TR_video"))
    remote = registry.get("TR_video")
    assert remote.switched_off is False
    assert remote.switch_off_reason is None


def test_remote_subscription_belongs_to_participant(reconciler, registry, room):
    assert subscribe_remote(reconciler, "PA_bob", "TR_audio", TrackKind.AUDIO)

    record = registry.get("TR_audio")
    assert record.is_remote
    assert record.participant_sid == "PA_bob"
    assert record.ready_state is ReadyState.LIVE
    assert room.participants["PA_bob"].tracks == {"TR_audio"}

    assert reconciler.handle(
        ParticipantEvent(
            ParticipantEventKind.TRACK_UNSUBSCRIBED, participant_sid="PA_bob", track_sid="TR_audio"
        )
    )
    assert "TR_audio" not in registry
    assert room.participants["PA_bob"].tracks == set()


def test_malformed_events_are_dropped_without_affecting_others(reconciler, registry):
    publish_local(reconciler, "TL_audio")

    assert not reconciler.handle(TrackEvent(TrackEventKind.MUTED, None))
    assert not reconciler.handle(TrackEvent("exploded", "TL_audio"))
    assert not reconciler.handle(RoomEvent(RoomEventKind.LOCAL_TRACK_PUBLISHED))
    assert not reconciler.handle(
        ParticipantEvent(ParticipantEventKind.TRACK_SUBSCRIBED, participant_sid="PA_x")
    )
    assert not reconciler.handle({"kind": "muted"})

    assert reconciler.handle(TrackEvent(TrackEventKind.MUTED, "TL_audio"))
    assert registry.get("TL_audio").muted is True
    assert len(registry) == 1


def test_events_for_unknown_tracks_are_ignored(reconciler, registry, observer):
    assert not reconciler.handle(TrackEvent(TrackEventKind.MUTED, "TR_ghost"))
    assert observer.track_calls == []
    assert len(registry) == 0


def test_duplicate_subscription_is_dropped(reconciler, registry):
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    assert not subscribe_remote(reconciler, "PA_bob", "TR_video")
    assert len(registry) == 1


def test_participant_reconnect_transitions_in_order(reconciler, observer):
    for kind in (
        ParticipantEventKind.CONNECTED,
        ParticipantEventKind.RECONNECTING,
        ParticipantEventKind.RECONNECTED,
    ):
        reconciler.handle(ParticipantEvent(kind, participant_sid="PA_bob", identity="bob"))

    assert observer.participant_calls == [
        ("PA_bob", ConnectionState.CONNECTED),
        ("PA_bob", ConnectionState.RECONNECTING),
        ("PA_bob", ConnectionState.CONNECTED),
    ]


def test_participant_disconnect_retires_its_tracks(reconciler, registry, room, observer):
    reconciler.handle(
        RoomEvent(RoomEventKind.PARTICIPANT_CONNECTED, participant_sid="PA_bob", identity="bob")
    )
    subscribe_remote(reconciler, "PA_bob", "TR_audio", TrackKind.AUDIO)
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    assert reconciler.handle(
        RoomEvent(RoomEventKind.PARTICIPANT_DISCONNECTED, participant_sid="PA_bob")
    )

    assert len(registry) == 0
    assert room.participants == {}
    assert observer.participant_calls[-2:] == [
        ("PA_bob", ConnectionState.DISCONNECTED),
        ("PA_bob", None),
    ]

    # Late events for the retired track are ignored
    assert not reconciler.handle(TrackEvent(TrackEventKind.MUTED, "TR_audio"))


def test_room_state_events(reconciler, room, observer):
    reconciler.handle(RoomEvent(RoomEventKind.RECONNECTING))
    assert room.state is ConnectionState.RECONNECTING
    reconciler.handle(RoomEvent(RoomEventKind.RECONNECTED))
    assert room.state is ConnectionState.CONNECTED

    reconciler.handle(RoomEvent(RoomEventKind.RECORDING_STARTED))
    assert room.is_recording is True
    reconciler.handle(RoomEvent(RoomEventKind.RECORDING_STOPPED))
    assert room.is_recording is False

    assert [state for _, state in observer.room_calls] == [
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.CONNECTED,
        ConnectionState.CONNECTED,
    ]


def test_room_disconnect_invokes_teardown_hook(reconciler, room, disconnected_rooms):
    assert reconciler.handle(RoomEvent(RoomEventKind.DISCONNECTED, error="signal closed"))

    assert room.state is ConnectionState.DISCONNECTED
    assert disconnected_rooms == ["RM_test"]


def test_closed_reconciler_ignores_events(reconciler, registry):
    reconciler.close()

    assert not publish_local(reconciler, "TL_audio")
    assert len(registry) == 0


def test_teardown_retires_everything(reconciler, registry, room):
    publish_local(reconciler, "TL_audio")
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    reconciler.teardown()

    assert len(registry) == 0
    assert room.participants == {}
    assert room.local_tracks == set()


class FailingRoomView(RoomObserver):
    def on_participant_changed(self, room_sid, participant_sid, record):
        raise RuntimeError("participant render failed")

    def on_room_changed(self, room_sid, record):
        raise RuntimeError("room render failed")


def test_room_disconnect_reaches_hook_when_observer_raises(room, registry, disconnected_rooms):
    reconciler = EventReconciler(
        room, registry, observer=FailingRoomView(), on_disconnected=disconnected_rooms.append
    )

    assert reconciler.handle(RoomEvent(RoomEventKind.DISCONNECTED))
    assert room.state is ConnectionState.DISCONNECTED
    assert disconnected_rooms == [room.sid]


def test_participant_disconnect_retires_tracks_when_observer_raises(room, registry):
    reconciler = EventReconciler(room, registry, observer=FailingRoomView())
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    assert reconciler.handle(
        ParticipantEvent(ParticipantEventKind.DISCONNECTED, participant_sid="PA_bob")
    )
    assert "TR_video" not in registry
    assert room.participants == {}


def test_owns_track_covers_local_and_subscribed_tracks(reconciler):
    publish_local(reconciler, "TL_audio")
    subscribe_remote(reconciler, "PA_bob", "TR_video")

    assert reconciler.owns_track("TL_audio")
    assert reconciler.owns_track("TR_video")
    assert not reconciler.owns_track("TR_elsewhere")
