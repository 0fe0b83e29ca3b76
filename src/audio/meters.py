"""Coarse per-track meter levels for observer broadcasts.

The engine does not render audio itself. While the native peer is active it
owns the real signal path, so meters report silence; under the simulated
clock a deterministic level is derived from the mixer gain of every track
that has content under the playhead, honouring mute and solo.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from domain.models import MAX_TRACK_VOLUME, Project

PEAK_HEADROOM = 0.9
RMS_RATIO = 0.7071


@dataclass(frozen=True)
class TrackMeter:
    """Peak and RMS estimate for one track, both normalized to 0..1."""

    track_id: int
    peak: float
    rms: float

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


def audible_track_ids(project: Project) -> List[int]:
    """Tracks that would be heard right now given mute and solo flags."""

    soloed = {entry.track_id for entry in project.mixer if entry.solo}
    audible = []
    for track in project.tracks:
        entry = project.mixer_entry(track.track_id)
        if entry is not None and entry.mute:
            continue
        if soloed and track.track_id not in soloed:
            continue
        audible.append(track.track_id)
    return audible


def estimate_track_meters(
    project: Project,
    *,
    position_bars: float,
    playing: bool,
    peer_active: bool,
) -> List[TrackMeter]:
    """Return one :class:`TrackMeter` per track in track order."""

    audible = set(audible_track_ids(project)) if playing and not peer_active else set()
    meters = []
    for track in project.tracks:
        level = 0.0
        if track.track_id in audible and any(
            clip.start <= position_bars < clip.end for clip in track.clips
        ):
            entry = project.mixer_entry(track.track_id)
            volume = entry.volume if entry is not None else 0.0
            level = min(1.0, volume / MAX_TRACK_VOLUME) * PEAK_HEADROOM
        meters.append(
            TrackMeter(
                track_id=track.track_id,
                peak=round(level, 4),
                rms=round(level * RMS_RATIO, 4),
            )
        )
    return meters


__all__ = ["TrackMeter", "audible_track_ids", "estimate_track_meters"]
