"""
Room Monitor
============

Joins a room with a locally minted token and logs the live state of every
local and remote track (lifecycle, mute state, byte rate) until the room
disconnects, the duration expires, or Ctrl-C.

    python backend/room_monitor.py my-room --identity alice --synthetic-audio
"""

import asyncio
import logging
import argparse
from typing import Optional

import numpy as np
from livekit import rtc

from config import DEFAULT_ENVIRONMENT, get_credentials, get_log_level
from livekit_bridge import RoomEventBridge, fetch_room_stats, resolve_room_sid
from presentation import MonitorContext
from supervisor import RoomSupervisor
from token_service import VideoTokenService, random_identity

logger = logging.getLogger("room_monitor")

SAMPLE_RATE = 48000
NUM_CHANNELS = 1
FRAME_MS = 10


async def publish_synthetic_audio(
    room: rtc.Room, name: str = "synthetic-audio", frequency: float = 440.0, gain: float = 0.2
):
    """Publish a sine tone as a local audio track and keep feeding it."""
    source = rtc.AudioSource(SAMPLE_RATE, NUM_CHANNELS)
    track = rtc.LocalAudioTrack.create_audio_track(name, source)
    options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE)
    publication = await room.local_participant.publish_track(track, options)
    logger.info(f"🎵 Publishing synthetic audio track {publication.sid}")

    samples_per_frame = SAMPLE_RATE * FRAME_MS // 1000
    phase = 0
    while True:
        t = (np.arange(samples_per_frame) + phase) / SAMPLE_RATE
        audio_signal = np.sin(2 * np.pi * frequency * t) * gain
        frame = rtc.AudioFrame.create(SAMPLE_RATE, NUM_CHANNELS, samples_per_frame)
        np.frombuffer(frame.data, dtype=np.int16)[:] = (audio_signal * 32767).astype(np.int16)
        phase += samples_per_frame
        await source.capture_frame(frame)


async def run_monitor(
    room_name: str,
    identity: Optional[str] = None,
    environment: str = DEFAULT_ENVIRONMENT,
    synthetic_audio: bool = False,
    duration: Optional[float] = None,
):
    credentials = get_credentials(environment)
    identity = identity or random_identity()
    token = VideoTokenService(credentials).generate_access_token(identity, room_name)

    context = MonitorContext()
    context.open()
    supervisor = RoomSupervisor(context)

    room = rtc.Room()
    disconnected = asyncio.Event()
    room.on("disconnected", lambda *args: disconnected.set())

    room_sid = None
    tone_task = None
    try:
        logger.info(f"🔌 Connecting to {room_name} as {identity}...")
        await room.connect(credentials.url, token, rtc.RoomOptions(auto_subscribe=True))
        room_sid = await resolve_room_sid(room)
        logger.info(f"✅ Connected to {room.name} ({room_sid})")

        supervisor.join(
            room_sid,
            lambda: fetch_room_stats(room),
            name=room.name,
            local_identity=identity,
        )
        RoomEventBridge(room, supervisor, room_sid).attach()

        if synthetic_audio:
            tone_task = asyncio.create_task(publish_synthetic_audio(room))

        try:
            await asyncio.wait_for(disconnected.wait(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info(f"⏱️ Monitoring window of {duration}s elapsed")
    finally:
        if tone_task is not None:
            tone_task.cancel()
            try:
                await tone_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"❌ Synthetic audio track failed: {e}")
        await room.disconnect()
        if room_sid is not None:
            supervisor.leave(room_sid)
        context.close()


def main():
    parser = argparse.ArgumentParser(description="Join a room and log live track state")
    parser.add_argument("room", help="room name to join")
    parser.add_argument("--identity", help="participant identity (random when omitted)")
    parser.add_argument("--environment", default=DEFAULT_ENVIRONMENT)
    parser.add_argument("--synthetic-audio", action="store_true", help="publish a sine tone")
    parser.add_argument("--duration", type=float, default=None, help="seconds to stay joined")
    args = parser.parse_args()

    logging.basicConfig(level=get_log_level())
    try:
        asyncio.run(
            run_monitor(
                args.room,
                identity=args.identity,
                environment=args.environment,
                synthetic_audio=args.synthetic_audio,
                duration=args.duration,
            )
        )
    except KeyboardInterrupt:
        logger.info("👋 Interrupted")


if __name__ == "__main__":
    main()
