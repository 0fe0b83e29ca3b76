"""Audio content analysis: envelopes, leading silence and coarse meters."""
from .analysis import (
    AudioDescription,
    WavLayout,
    describe_audio_file,
    estimate_leading_silence,
    leading_silence_from_file,
    leading_silence_from_wav_bytes,
    parse_wav_layout,
)
from .envelope import extract_envelope, leading_silence_from_envelope, resample_envelope
from .meters import TrackMeter, estimate_track_meters

__all__ = [
    "AudioDescription",
    "TrackMeter",
    "WavLayout",
    "describe_audio_file",
    "estimate_leading_silence",
    "estimate_track_meters",
    "extract_envelope",
    "leading_silence_from_envelope",
    "leading_silence_from_file",
    "leading_silence_from_wav_bytes",
    "parse_wav_layout",
    "resample_envelope",
]
