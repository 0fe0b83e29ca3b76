"""Musical transport clock with simulated and peer-driven modes.

In simulated mode the position is derived arithmetically from a start
timestamp, an offset in beats and the tempo::

    position_beats = offset + elapsed_ms * bpm / 60000

Every transition that changes the tempo or stops the clock first folds the
elapsed time into the offset so the position never jumps. In peer-driven mode
the clock mirrors the last position reported by the native peer; when the
peer disappears the clock continues from that position in simulated mode.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_BPM = 128.0
MIN_BPM = 20.0
MAX_BPM = 300.0
DEFAULT_BEATS_PER_BAR = 4.0
DEFAULT_STEPS_PER_BEAT = 4


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class ClockMode(str, Enum):
    SIMULATED = "simulated"
    PEER_DRIVEN = "peer"


@dataclass(frozen=True)
class TransportSnapshot:
    """Derived musical position at a point in time."""

    bar: int
    beat: int
    step: int
    step_index: int
    position_bars: float
    position_beats: float
    playing: bool
    bpm: float
    beats_per_bar: float
    timestamp_ms: float

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


def clamp_bpm(bpm: float) -> float:
    value = float(bpm)
    if not math.isfinite(value):
        return DEFAULT_BPM
    return max(MIN_BPM, min(MAX_BPM, value))


def beats_per_bar_for(numerator: int, denominator: int) -> float:
    """Quarter-note beats per bar for a time signature; 4 when invalid."""

    if numerator < 1 or denominator < 1:
        return DEFAULT_BEATS_PER_BAR
    return numerator * 4.0 / denominator


def derive_snapshot(
    position_beats: float,
    *,
    bpm: float,
    beats_per_bar: float,
    playing: bool,
    timestamp_ms: float,
    steps_per_beat: int = DEFAULT_STEPS_PER_BEAT,
) -> TransportSnapshot:
    """Compute bar/beat/step (all 1-based) from a position in beats."""

    beats = max(0.0, float(position_beats))
    per_bar = beats_per_bar if beats_per_bar > 0 else DEFAULT_BEATS_PER_BAR
    steps_per_bar = per_bar * steps_per_beat
    step_index = int(math.floor(beats * steps_per_beat))
    return TransportSnapshot(
        bar=int(math.floor(beats / per_bar)) + 1,
        beat=int(math.floor(math.fmod(beats, per_bar))) + 1,
        step=int(math.fmod(step_index, steps_per_bar)) + 1,
        step_index=step_index,
        position_bars=beats / per_bar,
        position_beats=beats,
        playing=playing,
        bpm=bpm,
        beats_per_bar=per_bar,
        timestamp_ms=timestamp_ms,
    )


class PeerTempoEstimator:
    """Estimate the peer's effective tempo from successive tick reports."""

    def __init__(self) -> None:
        self._last: Optional[tuple[float, float]] = None
        self.estimate: Optional[float] = None

    def reset(self) -> None:
        self._last = None
        self.estimate = None

    def update(self, position_beats: float, timestamp_ms: float, playing: bool) -> Optional[float]:
        previous = self._last
        self._last = (position_beats, timestamp_ms)
        if not playing or previous is None:
            return None
        delta_ms = timestamp_ms - previous[1]
        delta_beats = position_beats - previous[0]
        if delta_ms <= 8.0 or delta_beats <= 0.0:
            return None
        candidate = delta_beats * 60000.0 / delta_ms
        if 0.0 < candidate < 400.0:
            self.estimate = candidate
            return candidate
        return None


class TransportClock:
    """Authoritative position source while no peer is driving transport."""

    def __init__(
        self,
        *,
        bpm: float = DEFAULT_BPM,
        beats_per_bar: float = DEFAULT_BEATS_PER_BAR,
        steps_per_beat: int = DEFAULT_STEPS_PER_BEAT,
        time_source: Callable[[], float] = _wall_clock_ms,
    ) -> None:
        if steps_per_beat <= 0:
            raise ValueError("steps_per_beat must be positive")
        self._time = time_source
        self._bpm = clamp_bpm(bpm)
        self._beats_per_bar = beats_per_bar if beats_per_bar > 0 else DEFAULT_BEATS_PER_BAR
        self._steps_per_beat = steps_per_beat
        self._mode = ClockMode.SIMULATED
        self._playing = False
        self._offset_beats = 0.0
        self._started_at_ms: Optional[float] = None
        self._peer_position = 0.0
        self.peer_tempo = PeerTempoEstimator()

    @property
    def mode(self) -> ClockMode:
        return self._mode

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def bpm(self) -> float:
        return self._bpm

    @property
    def beats_per_bar(self) -> float:
        return self._beats_per_bar

    @property
    def started_at_ms(self) -> Optional[float]:
        return self._started_at_ms

    @property
    def offset_beats(self) -> float:
        return self._offset_beats

    def position_beats(self, now: Optional[float] = None) -> float:
        if self._mode is ClockMode.PEER_DRIVEN:
            return self._peer_position
        if not self._playing or self._started_at_ms is None:
            return self._offset_beats
        current = self._time() if now is None else now
        elapsed = max(0.0, current - self._started_at_ms)
        return self._offset_beats + elapsed * self._bpm / 60000.0

    def snapshot(self, now: Optional[float] = None) -> TransportSnapshot:
        current = self._time() if now is None else now
        return derive_snapshot(
            self.position_beats(current),
            bpm=self._bpm,
            beats_per_bar=self._beats_per_bar,
            playing=self._playing,
            timestamp_ms=current,
            steps_per_beat=self._steps_per_beat,
        )

    # ------------------------------------------------------------------
    # Simulated transport
    def play(self, now: Optional[float] = None) -> None:
        if self._playing:
            return
        self._playing = True
        self._started_at_ms = self._time() if now is None else now

    def pause(self, now: Optional[float] = None) -> None:
        self._fold(now)
        self._playing = False
        self._started_at_ms = None

    def stop(self, now: Optional[float] = None) -> None:
        """Pause and rewind to the top of the arrangement."""

        self.pause(now)
        self._offset_beats = 0.0
        self._peer_position = 0.0

    def seek(self, position_beats: float, now: Optional[float] = None) -> None:
        self._offset_beats = max(0.0, float(position_beats))
        self._peer_position = self._offset_beats
        if self._playing:
            self._started_at_ms = self._time() if now is None else now

    def seek_bars(self, position_bars: float, now: Optional[float] = None) -> None:
        self.seek(max(0.0, float(position_bars)) * self._beats_per_bar, now)

    def set_bpm(self, bpm: float, now: Optional[float] = None) -> float:
        """Change tempo without moving the playhead."""

        value = clamp_bpm(bpm)
        if self._playing:
            current = self._time() if now is None else now
            self._fold(current)
            self._started_at_ms = current
        self._bpm = value
        return value

    def set_beats_per_bar(self, beats_per_bar: float) -> None:
        self._beats_per_bar = beats_per_bar if beats_per_bar > 0 else DEFAULT_BEATS_PER_BAR

    def set_time_signature(self, numerator: int, denominator: int) -> None:
        self.set_beats_per_bar(beats_per_bar_for(numerator, denominator))

    # ------------------------------------------------------------------
    # Peer-driven transport
    def enter_peer_mode(self, now: Optional[float] = None) -> None:
        if self._mode is ClockMode.PEER_DRIVEN:
            return
        self._peer_position = self.position_beats(now)
        self._mode = ClockMode.PEER_DRIVEN
        self.peer_tempo.reset()

    def apply_peer_report(
        self,
        payload: Mapping[str, Any],
        *,
        accept_bpm: bool = False,
        force_playing: Optional[bool] = None,
        now: Optional[float] = None,
    ) -> TransportSnapshot:
        """Adopt a position report from the peer.

        Tempo is only taken over when ``accept_bpm`` is set (a response to an
        explicit tempo change); otherwise the locally desired tempo stands.
        ``force_playing`` pins the playing flag, e.g. for a play response that
        reports a stale paused state.
        """

        current = self._time() if now is None else now
        position = _read_number(payload, "positionBeats", "position_beats")
        if position is not None:
            self._peer_position = max(0.0, position)
        playing = payload.get("playing")
        if force_playing is not None:
            self._playing = force_playing
        elif isinstance(playing, bool):
            self._playing = playing
        if accept_bpm:
            reported = _read_number(payload, "bpm")
            if reported is not None and reported > 0:
                self._bpm = clamp_bpm(reported)
        estimate = self.peer_tempo.update(self._peer_position, current, self._playing)
        if estimate is not None and abs(estimate - self._bpm) > 2.0:
            logger.debug("Peer tempo estimate %.2f differs from %.2f", estimate, self._bpm)
        if self._mode is ClockMode.SIMULATED:
            self._offset_beats = self._peer_position
            self._started_at_ms = current if self._playing else None
        return self.snapshot(current)

    def peer_disconnected(self, now: Optional[float] = None) -> None:
        """Continue from the last peer position under the simulated clock."""

        current = self._time() if now is None else now
        self._mode = ClockMode.SIMULATED
        self._offset_beats = self._peer_position
        self._started_at_ms = current if self._playing else None
        self.peer_tempo.reset()
        logger.info(
            "Transport clock resumed in simulated mode at %.3f beats (playing=%s)",
            self._offset_beats,
            self._playing,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    def _fold(self, now: Optional[float]) -> None:
        if self._mode is ClockMode.PEER_DRIVEN:
            self._offset_beats = self._peer_position
            return
        self._offset_beats = self.position_beats(now)
        if self._playing:
            self._started_at_ms = self._time() if now is None else now


def _read_number(payload: Mapping[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if math.isfinite(float(value)):
                return float(value)
    return None


__all__ = [
    "ClockMode",
    "DEFAULT_BPM",
    "MAX_BPM",
    "MIN_BPM",
    "PeerTempoEstimator",
    "TransportClock",
    "TransportSnapshot",
    "beats_per_bar_for",
    "clamp_bpm",
    "derive_snapshot",
]
