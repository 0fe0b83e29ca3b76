"""Leading-silence detection and file description for imported audio.

Two estimators are combined by :func:`estimate_leading_silence`:

* the envelope estimate, computed from a precomputed peak envelope and the
  source duration
* a raw scan of the file, used when the envelope reports no offset because
  peak normalization can hide a genuinely silent intro

The raw scan parses RIFF/WAVE chunks directly and decodes 16-, 24- and 32-bit
integer PCM as well as 32-bit IEEE float. Other containers are decoded with
``soundfile``. Malformed input never raises; it yields an offset of zero.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from .envelope import DISPLAY_ENVELOPE_BUCKETS, extract_envelope, frame_peaks, leading_silence_from_envelope

logger = logging.getLogger(__name__)

MAX_SCAN_BYTES = 25 * 1024 * 1024
RAW_SILENCE_THRESHOLD = 0.01
WAVE_FORMAT_PCM = 1
WAVE_FORMAT_IEEE_FLOAT = 3
WAVE_FORMAT_EXTENSIBLE = 0xFFFE

_FULL_SCALE = {16: 32768.0, 24: 8388608.0, 32: 2147483648.0}


@dataclass(frozen=True)
class WavLayout:
    """Format details and data-region location of a RIFF/WAVE payload."""

    audio_format: int
    channels: int
    sample_rate: int
    bits_per_sample: int
    data_offset: int
    data_size: int

    @property
    def bytes_per_frame(self) -> int:
        return self.channels * (self.bits_per_sample // 8)

    @property
    def frame_count(self) -> int:
        return self.data_size // self.bytes_per_frame if self.bytes_per_frame else 0

    @property
    def duration_seconds(self) -> float:
        return self.frame_count / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True)
class AudioDescription:
    """Duration and display envelope of a decoded audio file."""

    duration_seconds: float
    sample_rate: int
    channels: int
    peaks: List[float]


def parse_wav_layout(data: bytes) -> Optional[WavLayout]:
    """Walk RIFF chunks from offset 12; ``None`` when the payload is not usable."""

    if len(data) < 12 or data[:4] != b"RIFF" or data[8:12] != b"WAVE":
        return None
    offset = 12
    fmt: Optional[tuple[int, int, int, int]] = None
    region: Optional[tuple[int, int]] = None
    while offset + 8 <= len(data):
        chunk_id = data[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", data, offset + 4)
        body = offset + 8
        if chunk_id == b"fmt " and chunk_size >= 16 and body + 16 <= len(data):
            audio_format, channels, sample_rate = struct.unpack_from("<HHI", data, body)
            (bits,) = struct.unpack_from("<H", data, body + 14)
            if audio_format == WAVE_FORMAT_EXTENSIBLE and chunk_size >= 26 and body + 26 <= len(data):
                (audio_format,) = struct.unpack_from("<H", data, body + 24)
            fmt = (audio_format, channels, sample_rate, bits)
        elif chunk_id == b"data":
            region = (body, max(0, min(chunk_size, len(data) - body)))
        if fmt is not None and region is not None:
            break
        offset = body + chunk_size + (chunk_size & 1)
    if fmt is None or region is None:
        return None
    audio_format, channels, sample_rate, bits = fmt
    if channels < 1 or sample_rate < 1 or bits not in (16, 24, 32):
        return None
    if audio_format == WAVE_FORMAT_IEEE_FLOAT and bits != 32:
        return None
    if audio_format not in (WAVE_FORMAT_PCM, WAVE_FORMAT_IEEE_FLOAT):
        return None
    return WavLayout(audio_format, channels, sample_rate, bits, region[0], region[1])


def decode_wav_samples(data: bytes, layout: WavLayout) -> np.ndarray:
    """Decode the data region into a ``frames x channels`` float array in -1..1."""

    frames = layout.frame_count
    width = layout.bits_per_sample // 8
    raw = data[layout.data_offset : layout.data_offset + frames * layout.bytes_per_frame]
    if frames == 0:
        return np.zeros((0, layout.channels), dtype=np.float64)
    if layout.audio_format == WAVE_FORMAT_IEEE_FLOAT:
        samples = np.frombuffer(raw, dtype="<f4").astype(np.float64)
        samples = np.nan_to_num(samples, nan=0.0, posinf=1.0, neginf=-1.0)
    elif width == 2:
        samples = np.frombuffer(raw, dtype="<i2") / _FULL_SCALE[16]
    elif width == 3:
        triplets = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        values = triplets[:, 0] | (triplets[:, 1] << 8) | (triplets[:, 2] << 16)
        values = np.where(values >= 0x800000, values - 0x1000000, values)
        samples = values / _FULL_SCALE[24]
    else:
        samples = np.frombuffer(raw, dtype="<i4") / _FULL_SCALE[32]
    return samples.reshape(frames, layout.channels)


def first_frame_above(samples: np.ndarray, threshold: float) -> Optional[int]:
    peaks = frame_peaks(samples)
    hits = np.flatnonzero(peaks > threshold)
    return int(hits[0]) if hits.size else None


def leading_silence_from_wav_bytes(data: bytes, *, threshold: float = RAW_SILENCE_THRESHOLD) -> float:
    """Seconds before the first frame louder than ``threshold`` of full scale."""

    layout = parse_wav_layout(data)
    if layout is None:
        return 0.0
    samples = decode_wav_samples(data, layout)
    index = first_frame_above(samples, threshold)
    if index is None:
        return 0.0
    return index / layout.sample_rate


def leading_silence_from_file(
    path: Path | str,
    *,
    max_bytes: int = MAX_SCAN_BYTES,
    threshold: float = RAW_SILENCE_THRESHOLD,
) -> float:
    """Raw-scan ``path`` for leading silence; 0 when too large or unreadable."""

    source = Path(path)
    try:
        if source.stat().st_size > max_bytes:
            logger.debug("Skipping silence scan of %s: larger than %d bytes", source, max_bytes)
            return 0.0
        data = source.read_bytes()
    except OSError as exc:
        logger.debug("Cannot read %s for silence scan: %s", source, exc)
        return 0.0
    if data[:4] == b"RIFF":
        return leading_silence_from_wav_bytes(data, threshold=threshold)
    decoded = _decode_with_soundfile(source)
    if decoded is None:
        return 0.0
    samples, sample_rate = decoded
    index = first_frame_above(samples, threshold)
    return index / sample_rate if index is not None and sample_rate else 0.0


def estimate_leading_silence(
    path: Optional[Path | str],
    *,
    peaks: Sequence[float] = (),
    duration_seconds: Optional[float] = None,
) -> float:
    """Envelope estimate first; fall back to the raw file scan when it is zero."""

    offset = 0.0
    if duration_seconds:
        offset = leading_silence_from_envelope(peaks, duration_seconds)
    if offset <= 0.0 and path is not None:
        offset = leading_silence_from_file(path)
    return max(0.0, offset)


def describe_audio_file(
    path: Path | str, *, bucket_count: int = DISPLAY_ENVELOPE_BUCKETS
) -> Optional[AudioDescription]:
    """Decode ``path`` and return its duration plus a display envelope."""

    source = Path(path)
    decoded: Optional[tuple[np.ndarray, int]] = None
    try:
        data = source.read_bytes() if source.stat().st_size <= MAX_SCAN_BYTES else b""
    except OSError:
        return None
    layout = parse_wav_layout(data) if data else None
    if layout is not None:
        decoded = (decode_wav_samples(data, layout), layout.sample_rate)
    else:
        decoded = _decode_with_soundfile(source)
    if decoded is None:
        return None
    samples, sample_rate = decoded
    frames = samples.shape[0]
    return AudioDescription(
        duration_seconds=frames / sample_rate if sample_rate else 0.0,
        sample_rate=sample_rate,
        channels=samples.shape[1] if samples.ndim == 2 else 1,
        peaks=extract_envelope(samples, bucket_count),
    )


def _decode_with_soundfile(path: Path) -> Optional[tuple[np.ndarray, int]]:
    try:
        import soundfile as sf

        data, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
    except (OSError, RuntimeError, ValueError) as exc:
        logger.debug("soundfile could not decode %s: %s", path, exc)
        return None
    return np.asarray(data, dtype=np.float64), int(sample_rate)


__all__ = [
    "AudioDescription",
    "MAX_SCAN_BYTES",
    "RAW_SILENCE_THRESHOLD",
    "WavLayout",
    "decode_wav_samples",
    "describe_audio_file",
    "estimate_leading_silence",
    "first_frame_above",
    "leading_silence_from_file",
    "leading_silence_from_wav_bytes",
    "parse_wav_layout",
]
