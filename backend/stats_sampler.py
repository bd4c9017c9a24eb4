"""
Stats Sampler
=============

Polls a room's aggregate statistics report on a fixed cadence and turns
per-track byte counters into a byte rate stored on each TrackRecord.

Each start() opens a new generation; stop() bumps the generation and
cancels the scheduled task, so a fetch that resolves after stop() is
recognised as stale and dropped without touching the registry.
"""

import math
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, List, Optional

from config import STATS_INTERVAL_SECONDS
from track_registry import TrackRecord, TrackRegistry, UnknownTrackError

logger = logging.getLogger("stats_sampler")


class StatsFetchError(Exception):
    """Raised when the aggregate statistics report cannot be fetched"""

    pass


@dataclass
class TrackStatSample:
    """Byte counter of one track at one point in time"""

    track_sid: str
    bytes: int
    timestamp_ms: int
    media_track_id: Optional[str] = None


@dataclass
class StatsReport:
    """Aggregate report grouped the way the vendor reports it"""

    local_audio: List[TrackStatSample] = field(default_factory=list)
    local_video: List[TrackStatSample] = field(default_factory=list)
    remote_audio: List[TrackStatSample] = field(default_factory=list)
    remote_video: List[TrackStatSample] = field(default_factory=list)

    def samples(self) -> Iterator[TrackStatSample]:
        for group in (self.local_audio, self.local_video, self.remote_video, self.remote_audio):
            yield from group

    def __len__(self) -> int:
        return (
            len(self.local_audio)
            + len(self.local_video)
            + len(self.remote_audio)
            + len(self.remote_video)
        )


def round10(value: float) -> float:
    """Round to one decimal, halves rounding up."""
    return math.floor(value * 10 + 0.5) / 10


def compute_rate(
    previous_bytes: int, previous_timestamp_ms: int, bytes_now: int, timestamp_now_ms: int
) -> float:
    """Bytes per millisecond between two samples, rounded to one decimal."""
    elapsed = max(timestamp_now_ms - previous_timestamp_ms, 1)
    return round10((bytes_now - previous_bytes) / elapsed)


FetchStats = Callable[[], Awaitable[StatsReport]]


class StatsSampler:
    """
    Periodic stats loop for a single room.

    Args:
        room_sid: Room the sampler belongs to (for logging)
        fetch_stats: Coroutine function returning a StatsReport
        registry: Track registry receiving the rate updates
        interval: Seconds between ticks
        owns_track: Optional predicate restricting updates to the room's tracks
    """

    def __init__(
        self,
        room_sid: str,
        fetch_stats: FetchStats,
        registry: TrackRegistry,
        interval: float = STATS_INTERVAL_SECONDS,
        owns_track: Optional[Callable[[str], bool]] = None,
    ):
        self.room_sid = room_sid
        self.fetch_stats = fetch_stats
        self.registry = registry
        self.interval = interval
        self.owns_track = owns_track

        self.generation = 0
        self.active = False
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    def start(self):
        """Schedule the sampling loop. Must be called from a running event loop."""
        if self.active:
            logger.warning(f"⚠️ Stats sampler for {self.room_sid} already running")
            return
        self.active = True
        self.generation += 1
        self._task = asyncio.create_task(
            self._run(self.generation), name=f"stats-sampler-{self.room_sid}"
        )
        logger.info(f"📊 Stats sampler started for room {self.room_sid} (every {self.interval}s)")

    def stop(self) -> bool:
        """
        Cancel the loop. Returns False when the sampler was not running.
        """
        if not self.active:
            return False
        self.active = False
        self.generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info(f"🛑 Stats sampler stopped for room {self.room_sid}")
        return True

    def _is_current(self, generation: int) -> bool:
        return generation == self.generation

    async def _run(self, generation: int):
        try:
            while self._is_current(generation):
                await self.sample_once(generation)
                if not self._is_current(generation):
                    break
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.debug(f"Stats loop for {self.room_sid} cancelled")
            raise

    async def _fetch(self) -> StatsReport:
        try:
            report = await self.fetch_stats()
        except (asyncio.CancelledError, StatsFetchError):
            raise
        except Exception as e:
            raise StatsFetchError(f"Stats fetch failed for room {self.room_sid}: {e}") from e

        if not isinstance(report, StatsReport):
            raise StatsFetchError(
                f"Stats fetch for room {self.room_sid} returned {type(report).__name__}"
            )
        return report

    async def sample_once(self, generation: Optional[int] = None) -> int:
        """
        Fetch one report and apply it. Returns the number of tracks updated.
        """
        if generation is None:
            generation = self.generation
        self.ticks += 1

        try:
            report = await self._fetch()
        except StatsFetchError as e:
            logger.warning(f"⚠️ {e}; retrying next tick")
            return 0

        if not self._is_current(generation):
            logger.debug(f"Dropping stale stats report for room {self.room_sid}")
            return 0
        return self.apply_report(report)

    def apply_report(self, report: StatsReport) -> int:
        updated = 0
        for sample in report.samples():
            try:
                if self._apply_sample(sample):
                    updated += 1
            except UnknownTrackError:
                # Track retired between lookup and update
                continue
            except Exception as e:
                logger.error(f"❌ Failed to apply stats for track {sample.track_sid}: {e}")
        return updated

    def _resolve(self, sample: TrackStatSample) -> Optional[TrackRecord]:
        record = self.registry.get(sample.track_sid)
        if record is None and sample.media_track_id:
            record = self.registry.find_by_media_id(sample.media_track_id)
        return record

    def _apply_sample(self, sample: TrackStatSample) -> bool:
        record = self._resolve(sample)
        if record is None:
            return False
        if self.owns_track is not None and not self.owns_track(record.sid):
            return False
        if record.is_stopped:
            return False

        previous_ts = record.last_sample_timestamp_ms
        if previous_ts is not None and sample.timestamp_ms < previous_ts:
            logger.debug(f"Out-of-order sample for {record.sid}, skipping")
            return False

        def mutate(target: TrackRecord):
            if previous_ts is None or sample.bytes < target.last_bytes_transferred:
                # First sample, or the counter restarted
                target.byte_rate = 0.0
            else:
                target.byte_rate = compute_rate(
                    target.last_bytes_transferred,
                    previous_ts,
                    sample.bytes,
                    sample.timestamp_ms,
                )
            target.last_bytes_transferred = sample.bytes
            target.last_sample_timestamp_ms = sample.timestamp_ms

        self.registry.update(record.sid, mutate)
        return True
