import struct
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from audio.analysis import (
    WAVE_FORMAT_EXTENSIBLE,
    WAVE_FORMAT_IEEE_FLOAT,
    WAVE_FORMAT_PCM,
    decode_wav_samples,
    describe_audio_file,
    estimate_leading_silence,
    leading_silence_from_file,
    leading_silence_from_wav_bytes,
    parse_wav_layout,
)

SAMPLE_RATE = 1_000


def _encode(samples: np.ndarray, bits: int, floating: bool) -> bytes:
    if floating:
        return samples.astype("<f4").tobytes()
    scale = float(2 ** (bits - 1) - 1)
    ints = np.round(samples * scale).astype(np.int64)
    if bits == 16:
        return ints.astype("<i2").tobytes()
    if bits == 32:
        return ints.astype("<i4").tobytes()
    raw = ints.astype("<i4").view(np.uint8).reshape(-1, 4)[:, :3]
    return raw.tobytes()


def _wav_bytes(
    samples: np.ndarray,
    *,
    bits: int = 16,
    floating: bool = False,
    extensible: bool = False,
    junk: bytes = b"",
) -> bytes:
    frames = samples if samples.ndim == 2 else samples.reshape(-1, 1)
    channels = frames.shape[1]
    body = _encode(frames.reshape(-1), bits, floating)
    audio_format = WAVE_FORMAT_IEEE_FLOAT if floating else WAVE_FORMAT_PCM
    block_align = channels * bits // 8
    if extensible:
        fmt_body = struct.pack(
            "<HHIIHHHHIH14s",
            WAVE_FORMAT_EXTENSIBLE,
            channels,
            SAMPLE_RATE,
            SAMPLE_RATE * block_align,
            block_align,
            bits,
            22,
            bits,
            0,
            audio_format,
            b"\x00" * 14,
        )
    else:
        fmt_body = struct.pack(
            "<HHIIHH", audio_format, channels, SAMPLE_RATE, SAMPLE_RATE * block_align, block_align, bits
        )
    chunks = b""
    if junk:
        chunks += b"JUNK" + struct.pack("<I", len(junk)) + junk + (b"\x00" if len(junk) % 2 else b"")
    chunks += b"fmt " + struct.pack("<I", len(fmt_body)) + fmt_body
    chunks += b"data" + struct.pack("<I", len(body)) + body
    return b"RIFF" + struct.pack("<I", 4 + len(chunks)) + b"WAVE" + chunks


def _delayed_tone(silent_frames: int = 100, loud_frames: int = 400, channels: int = 1) -> np.ndarray:
    signal = np.concatenate([np.zeros(silent_frames), np.full(loud_frames, 0.5)])
    if channels == 1:
        return signal
    return np.column_stack([signal] + [np.zeros_like(signal)] * (channels - 1))


@pytest.mark.parametrize(
    "bits, floating",
    [(16, False), (24, False), (32, False), (32, True)],
)
def test_leading_silence_for_each_sample_format(bits, floating):
    data = _wav_bytes(_delayed_tone(), bits=bits, floating=floating)

    assert leading_silence_from_wav_bytes(data) == pytest.approx(0.1)


def test_layout_walks_past_unknown_chunks():
    data = _wav_bytes(_delayed_tone(channels=2), junk=b"odd")

    layout = parse_wav_layout(data)

    assert layout is not None
    assert layout.channels == 2
    assert layout.frame_count == 500
    assert layout.duration_seconds == pytest.approx(0.5)
    assert leading_silence_from_wav_bytes(data) == pytest.approx(0.1)


def test_extensible_format_uses_sub_format():
    data = _wav_bytes(_delayed_tone(), bits=24, extensible=True)

    layout = parse_wav_layout(data)

    assert layout is not None
    assert layout.audio_format == WAVE_FORMAT_PCM
    assert leading_silence_from_wav_bytes(data) == pytest.approx(0.1)


def test_decoded_24_bit_samples_are_normalized():
    data = _wav_bytes(np.array([0.0, 0.5, -0.5, 1.0]), bits=24)
    layout = parse_wav_layout(data)

    samples = decode_wav_samples(data, layout)

    assert samples.shape == (4, 1)
    assert samples[:, 0] == pytest.approx([0.0, 0.5, -0.5, 1.0], abs=1e-6)


@pytest.mark.parametrize(
    "payload",
    [b"", b"RIFF\x00\x00\x00\x00WAVE", b"not a wav file at all"],
)
def test_malformed_payloads_report_no_silence(payload):
    assert parse_wav_layout(payload) is None
    assert leading_silence_from_wav_bytes(payload) == 0.0


def test_unsupported_bit_depth_rejected():
    data = bytearray(_wav_bytes(_delayed_tone(), bits=16))
    fmt_offset = data.index(b"fmt ") + 8
    struct.pack_into("<H", data, fmt_offset + 14, 8)

    assert parse_wav_layout(bytes(data)) is None


def test_fully_silent_file_reports_zero():
    data = _wav_bytes(np.zeros(200))

    assert leading_silence_from_wav_bytes(data) == 0.0


def test_file_scan_respects_size_limit(tmp_path: Path):
    path = tmp_path / "tone.wav"
    path.write_bytes(_wav_bytes(_delayed_tone()))

    assert leading_silence_from_file(path) == pytest.approx(0.1)
    assert leading_silence_from_file(path, max_bytes=10) == 0.0
    assert leading_silence_from_file(tmp_path / "missing.wav") == 0.0


def test_estimate_prefers_envelope_then_falls_back(tmp_path: Path):
    path = tmp_path / "tone.wav"
    path.write_bytes(_wav_bytes(_delayed_tone()))

    from_envelope = estimate_leading_silence(path, peaks=[0.0, 0.0, 0.5, 0.5], duration_seconds=2.0)
    from_file = estimate_leading_silence(path, peaks=[0.5, 0.5], duration_seconds=2.0)
    without_duration = estimate_leading_silence(path, peaks=[0.0, 0.5])

    assert from_envelope == pytest.approx(1.0)
    assert from_file == pytest.approx(0.1)
    assert without_duration == pytest.approx(0.1)
    assert estimate_leading_silence(None) == 0.0


def test_describe_wav_file(tmp_path: Path):
    path = tmp_path / "tone.wav"
    path.write_bytes(_wav_bytes(_delayed_tone(silent_frames=1_000, loud_frames=1_000)))

    description = describe_audio_file(path, bucket_count=100)

    assert description is not None
    assert description.duration_seconds == pytest.approx(2.0)
    assert description.sample_rate == SAMPLE_RATE
    assert description.channels == 1
    assert len(description.peaks) == 100
    assert description.peaks[0] == 0.0
    assert description.peaks[-1] == pytest.approx(0.5, abs=1e-3)


def test_describe_non_wav_file_goes_through_soundfile(tmp_path: Path):
    path = tmp_path / "tone.flac"
    sf.write(str(path), _delayed_tone(), 8_000, format="FLAC")

    description = describe_audio_file(path, bucket_count=50)

    assert description is not None
    assert description.sample_rate == 8_000
    assert description.duration_seconds == pytest.approx(500 / 8_000)
    assert leading_silence_from_file(path) == pytest.approx(100 / 8_000)


def test_describe_undecodable_file_returns_none(tmp_path: Path):
    path = tmp_path / "notes.txt"
    path.write_text("definitely not audio", encoding="utf-8")

    assert describe_audio_file(path) is None
    assert describe_audio_file(tmp_path / "missing.wav") is None
