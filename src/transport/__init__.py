"""Transport clock package: simulated and peer-driven musical position."""
from .clock import (
    ClockMode,
    PeerTempoEstimator,
    TransportClock,
    TransportSnapshot,
    beats_per_bar_for,
    clamp_bpm,
    derive_snapshot,
)

__all__ = [
    "ClockMode",
    "PeerTempoEstimator",
    "TransportClock",
    "TransportSnapshot",
    "beats_per_bar_for",
    "clamp_bpm",
    "derive_snapshot",
]
