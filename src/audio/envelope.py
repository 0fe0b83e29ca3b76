"""Peak-envelope helpers for waveform display and precompute.

An envelope is an ordered list of normalized (0..1) per-block peak
magnitudes. Extraction reduces an arbitrary sample buffer to at most
``MAX_ENVELOPE_BUCKETS`` buckets; resampling converts an existing envelope to
a different bucket count (block-max when shrinking, linear interpolation when
growing).
"""
from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np

MAX_ENVELOPE_BUCKETS = 2048
MIN_ENVELOPE_BUCKETS = 24
DISPLAY_ENVELOPE_BUCKETS = 1024
ENVELOPE_SILENCE_THRESHOLD = 0.02


def frame_peaks(samples: np.ndarray) -> np.ndarray:
    """Return the max absolute magnitude across channels for every frame."""

    buffer = np.asarray(samples, dtype=np.float64)
    if buffer.size == 0:
        return np.zeros(0, dtype=np.float64)
    if buffer.ndim == 1:
        return np.abs(buffer)
    return np.max(np.abs(buffer), axis=1)


def extract_envelope(samples: np.ndarray, bucket_count: float = DISPLAY_ENVELOPE_BUCKETS) -> List[float]:
    """Downsample ``samples`` (frames or frames x channels) into peak buckets.

    The bucket count is clamped to 24..2048. Buckets span ``frames // count``
    frames each and the final bucket absorbs the remainder. Buffers shorter
    than the bucket count yield one bucket per frame.
    """

    peaks = frame_peaks(samples)
    frames = peaks.shape[0]
    if frames == 0:
        return []
    peaks = np.nan_to_num(peaks, nan=0.0, posinf=1.0, neginf=0.0)
    target = min(MAX_ENVELOPE_BUCKETS, max(MIN_ENVELOPE_BUCKETS, int(round(bucket_count))))
    block = max(1, frames // target)
    buckets = min(target, frames)
    regular = buckets - 1
    values = np.empty(buckets, dtype=np.float64)
    if regular:
        values[:regular] = np.max(peaks[: regular * block].reshape(regular, block), axis=1)
    values[regular] = np.max(peaks[regular * block :])
    return [round(float(value), 4) for value in np.minimum(values, 1.0)]


def resample_envelope(values: Sequence[float], target: int) -> List[float]:
    """Resample an envelope to ``target`` buckets; output stays within [0, 1]."""

    count = int(target)
    source = _clean(values)
    if count <= 0 or not source:
        return []
    length = len(source)
    if length == count:
        return list(source)
    if count < length:
        span = length / count
        shrunk = []
        for index in range(count):
            start = int(math.floor(index * span))
            end = max(start + 1, int(math.floor((index + 1) * span)))
            shrunk.append(max(source[start:end]))
        return shrunk
    if length == 1:
        return [source[0]] * count
    grown = []
    scale = (length - 1) / (count - 1)
    for index in range(count):
        position = index * scale
        lower = int(math.floor(position))
        upper = min(lower + 1, length - 1)
        fraction = position - lower
        value = source[lower] + (source[upper] - source[lower]) * fraction
        grown.append(round(min(1.0, max(0.0, value)), 4))
    return grown


def leading_silence_from_envelope(
    values: Sequence[float],
    duration_seconds: float,
    *,
    threshold: float = ENVELOPE_SILENCE_THRESHOLD,
) -> float:
    """Estimate leading silence as ``first_index_above / len * duration``."""

    if len(values) == 0 or not duration_seconds or duration_seconds <= 0:
        return 0.0
    cleaned = _clean(values)
    for index, value in enumerate(cleaned):
        if value > threshold:
            return index / len(cleaned) * float(duration_seconds)
    return 0.0


def _clean(values: Sequence[float]) -> List[float]:
    cleaned = []
    for value in values:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = 0.0
        if not math.isfinite(number):
            number = 0.0
        cleaned.append(min(1.0, max(0.0, number)))
    return cleaned


__all__ = [
    "DISPLAY_ENVELOPE_BUCKETS",
    "ENVELOPE_SILENCE_THRESHOLD",
    "MAX_ENVELOPE_BUCKETS",
    "MIN_ENVELOPE_BUCKETS",
    "extract_envelope",
    "frame_peaks",
    "leading_silence_from_envelope",
    "resample_envelope",
]
