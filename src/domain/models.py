"""Pydantic-powered domain models for arrangement projects.

The models describe the authoritative project document: tracks carrying
clips on the playlist, reusable patterns, the per-track mixer, and the plugin
nodes hosted by the native peer. Inbound documents frequently arrive with
camelCase or legacy field names, so aliases are accepted on validation while
serialization always emits the canonical snake_case names.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

PROJECT_VERSION = "1.0.0-alpha"
DEFAULT_BPM = 128.0
MIN_BPM = 20.0
MAX_BPM = 300.0
STEPS_PER_BEAT = 4
GRID_STEP_BARS = 1.0 / 16.0
DEFAULT_PATTERN_LENGTH = 16
MAX_PATTERN_LENGTH = 128
MAX_SWING = 0.95
TRACK_NAME_LIMIT = 25
DEFAULT_TRACK_VOLUME = 0.85
MAX_TRACK_VOLUME = 1.2
MAX_WAVEFORM_PEAKS = 2048
PLUGIN_NODE_TYPE = "vst_instrument"

AUDIO_FORMATS = ("wav", "flac", "mp3", "ogg", "aac", "aiff", "aif")
MIDI_FORMATS = ("mid", "midi")
FadeCurve = Literal["linear", "convex", "concave", "sCurve"]


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TimeSignature(_DocumentModel):
    """Musical meter; ``beats_per_bar`` is expressed in quarter-note beats."""

    numerator: int = Field(4, ge=1, le=16)
    denominator: int = Field(4, ge=1, le=32)

    @property
    def beats_per_bar(self) -> float:
        return self.numerator * 4.0 / self.denominator


class DrumStep(_DocumentModel):
    """Active cell of a drum pattern grid."""

    lane: str = Field(..., min_length=1)
    index: int = Field(..., ge=0)
    velocity: float = Field(1.0, gt=0.0, le=1.0)


class MidiNote(_DocumentModel):
    """Note event inside a MIDI pattern; times are measured in steps."""

    id: str
    start: float = Field(0.0, ge=0.0)
    length: float = Field(1.0, gt=0.0)
    pitch: int = Field(60, ge=0, le=127)
    velocity: float = Field(0.8, ge=0.0, le=1.0)


class Pattern(_DocumentModel):
    """Reusable drum or MIDI pattern referenced by playlist clips."""

    id: str = Field(..., min_length=1)
    type: Literal["drum", "midi"] = "drum"
    length: int = Field(DEFAULT_PATTERN_LENGTH, ge=1, le=MAX_PATTERN_LENGTH)
    swing: float = Field(0.0, ge=0.0, le=MAX_SWING)
    steps: List[DrumStep] = Field(default_factory=list)
    notes: List[MidiNote] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_grid(self) -> Pattern:  # type: ignore[override]
        for step in self.steps:
            if step.index >= self.length:
                raise ValueError(
                    f"Pattern {self.id!r} step {step.index} exceeds length {self.length}"
                )
        return self


class Clip(_DocumentModel):
    """Placement of a pattern or an imported file on a track, in bars."""

    id: str = Field(..., min_length=1)
    start: float = Field(0.0, ge=0.0, description="Start position in bars")
    length: float = Field(1.0, ge=GRID_STEP_BARS, description="Length in bars")
    pattern_id: Optional[str] = Field(
        None, validation_alias=_aliases("pattern_id", "patternId", "pattern")
    )
    type: Optional[Literal["audio", "midi"]] = None
    source_name: Optional[str] = Field(None, validation_alias=_aliases("source_name", "sourceName"))
    source_format: Optional[str] = Field(
        None, validation_alias=_aliases("source_format", "sourceFormat", "format")
    )
    source_mime: Optional[str] = Field(None, validation_alias=_aliases("source_mime", "sourceMime"))
    source_size_bytes: Optional[int] = Field(
        None, ge=0, validation_alias=_aliases("source_size_bytes", "sourceSizeBytes")
    )
    source_duration_seconds: Optional[float] = Field(
        None,
        ge=0.0,
        validation_alias=_aliases("source_duration_seconds", "sourceDurationSeconds"),
    )
    waveform_peaks: List[float] = Field(
        default_factory=list,
        max_length=MAX_WAVEFORM_PEAKS,
        validation_alias=_aliases("waveform_peaks", "waveformPeaks"),
    )
    source_path: Optional[str] = Field(None, validation_alias=_aliases("source_path", "sourcePath"))
    fade_in: float = Field(0.0, ge=0.0, validation_alias=_aliases("fade_in", "fadeIn"))
    fade_out: float = Field(0.0, ge=0.0, validation_alias=_aliases("fade_out", "fadeOut"))
    fade_in_curve: FadeCurve = Field(
        "linear", validation_alias=_aliases("fade_in_curve", "fadeInCurve")
    )
    fade_out_curve: FadeCurve = Field(
        "linear", validation_alias=_aliases("fade_out_curve", "fadeOutCurve")
    )

    @model_validator(mode="after")
    def validate_content(self) -> Clip:  # type: ignore[override]
        if self.pattern_id is None and self.type is None:
            raise ValueError(f"Clip {self.id!r} references neither a pattern nor a source file")
        if any(peak < 0.0 or peak > 1.0 for peak in self.waveform_peaks):
            raise ValueError(f"Clip {self.id!r} waveform peaks must lie within [0, 1]")
        return self

    @property
    def end(self) -> float:
        return self.start + self.length

    @property
    def is_audio(self) -> bool:
        return self.type == "audio"


class Track(_DocumentModel):
    """Playlist lane holding clips; ``track_id`` doubles as its 1-based position."""

    track_id: int = Field(..., ge=1, validation_alias=_aliases("track_id", "trackId", "track"))
    name: str = Field("", max_length=TRACK_NAME_LIMIT)
    chain_collapsed: bool = Field(
        True, validation_alias=_aliases("chain_collapsed", "chainCollapsed")
    )
    chain_enabled: bool = Field(True, validation_alias=_aliases("chain_enabled", "chainEnabled"))
    clips: List[Clip] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_clip_ids(self) -> Track:  # type: ignore[override]
        seen = set()
        for clip in self.clips:
            if clip.id in seen:
                raise ValueError(f"Track {self.track_id} contains duplicate clip id {clip.id!r}")
            seen.add(clip.id)
        if not self.name:
            self.name = default_track_name(self.track_id)
        return self

    def clip(self, clip_id: str) -> Optional[Clip]:
        return next((clip for clip in self.clips if clip.id == clip_id), None)


class MixerEntry(_DocumentModel):
    """Per-track gain staging and state flags."""

    track_id: int = Field(..., ge=1, validation_alias=_aliases("track_id", "trackId", "track"))
    volume: float = Field(DEFAULT_TRACK_VOLUME, ge=0.0, le=MAX_TRACK_VOLUME)
    pan: float = Field(0.0, ge=-1.0, le=1.0)
    mute: bool = False
    solo: bool = False
    record_armed: bool = Field(
        False, validation_alias=_aliases("record_armed", "recordArmed")
    )


class PluginParameter(_DocumentModel):
    """Schema entry describing one automatable plugin parameter."""

    id: str
    name: str = ""
    min: float = 0.0
    max: float = 1.0
    value: float = 0.0


class PluginNode(_DocumentModel):
    """Node of the project graph; ``vst_instrument`` nodes are hosted by the peer.

    Nodes of other types are carried opaquely (extra fields are preserved) so
    documents authored by newer tools survive a load/save cycle.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1)
    type: str = PLUGIN_NODE_TYPE
    plugin: Optional[str] = None
    plugin_uid: Optional[str] = Field(
        None, validation_alias=_aliases("plugin_uid", "pluginUid")
    )
    plugin_type: Optional[str] = Field(
        None, validation_alias=_aliases("plugin_type", "pluginType")
    )
    plugin_kind: Literal["instrument", "effect"] = Field(
        "instrument", validation_alias=_aliases("plugin_kind", "pluginKind")
    )
    track_id: Optional[int] = Field(
        None, ge=1, validation_alias=_aliases("track_id", "trackId", "track")
    )
    plugin_index: Optional[int] = Field(
        None, ge=0, validation_alias=_aliases("plugin_index", "pluginIndex")
    )
    bypassed: bool = False
    parameter_schema: List[PluginParameter] = Field(
        default_factory=list, validation_alias=_aliases("parameter_schema", "parameterSchema")
    )
    params: Dict[str, float] = Field(default_factory=dict)

    @property
    def is_plugin(self) -> bool:
        return self.type == PLUGIN_NODE_TYPE


class Project(_DocumentModel):
    """Top-level container storing tracks, patterns, mixer and plugin nodes."""

    version: str = PROJECT_VERSION
    project_name: str = Field(
        "Untitled Project", validation_alias=_aliases("project_name", "projectName", "name")
    )
    bpm: float = Field(DEFAULT_BPM, ge=MIN_BPM, le=MAX_BPM)
    time_signature: TimeSignature = Field(
        default_factory=TimeSignature,
        validation_alias=_aliases("time_signature", "timeSignature"),
    )
    tracks: List[Track] = Field(
        default_factory=list, validation_alias=_aliases("tracks", "playlist")
    )
    patterns: List[Pattern] = Field(default_factory=list)
    mixer: List[MixerEntry] = Field(default_factory=list)
    nodes: List[PluginNode] = Field(default_factory=list)
    playlist_view_bars: int = Field(
        32, ge=8, le=4096, validation_alias=_aliases("playlist_view_bars", "playlistViewBars")
    )
    playlist_bar_width: int = Field(
        92, ge=36, le=220, validation_alias=_aliases("playlist_bar_width", "playlistBarWidth")
    )
    playlist_show_track_nodes: bool = Field(
        True,
        validation_alias=_aliases("playlist_show_track_nodes", "playlistShowTrackNodes"),
    )
    metronome_enabled: bool = Field(
        False, validation_alias=_aliases("metronome_enabled", "metronomeEnabled")
    )

    @model_validator(mode="after")
    def validate_references(self) -> Project:  # type: ignore[override]
        _ensure_unique("track", [track.track_id for track in self.tracks])
        _ensure_unique("pattern", [pattern.id for pattern in self.patterns])
        _ensure_unique("node", [node.id for node in self.nodes])
        _ensure_unique("mixer track", [entry.track_id for entry in self.mixer])
        pattern_ids = {pattern.id for pattern in self.patterns}
        for track in self.tracks:
            for clip in track.clips:
                if clip.pattern_id is not None and clip.pattern_id not in pattern_ids:
                    raise ValueError(
                        f"Clip {clip.id!r} on track {track.track_id} references "
                        f"unknown pattern {clip.pattern_id!r}"
                    )
        return self

    @property
    def beats_per_bar(self) -> float:
        return self.time_signature.beats_per_bar

    def track(self, track_id: int) -> Optional[Track]:
        return next((track for track in self.tracks if track.track_id == track_id), None)

    def pattern(self, pattern_id: str) -> Optional[Pattern]:
        return next((pattern for pattern in self.patterns if pattern.id == pattern_id), None)

    def node(self, node_id: str) -> Optional[PluginNode]:
        return next((node for node in self.nodes if node.id == node_id), None)

    def mixer_entry(self, track_id: int) -> Optional[MixerEntry]:
        return next((entry for entry in self.mixer if entry.track_id == track_id), None)

    def max_track_id(self) -> int:
        return max((track.track_id for track in self.tracks), default=0)

    def plugin_nodes_for_track(self, track_id: int) -> List[PluginNode]:
        """Return the plugin nodes on ``track_id`` ordered by chain position."""

        indexed = [
            (position, node)
            for position, node in enumerate(self.nodes)
            if node.is_plugin and node.track_id == track_id
        ]
        indexed.sort(key=lambda item: (_chain_sort_index(item[1], item[0]), item[0]))
        return [node for _, node in indexed]

    def bars_to_seconds(self, bars: float) -> float:
        """Convert a bar count to seconds at the project tempo and meter."""

        return bars * self.beats_per_bar * 60.0 / self.bpm


def default_track_name(track_id: int) -> str:
    return f"Track {track_id}"


def _chain_sort_index(node: PluginNode, position: int) -> int:
    return node.plugin_index if node.plugin_index is not None else position


def _ensure_unique(label: str, values: List[Any]) -> None:
    seen = set()
    for value in values:
        if value in seen:
            raise ValueError(f"Duplicate {label} id {value!r}")
        seen.add(value)


__all__ = [
    "AUDIO_FORMATS",
    "Clip",
    "DEFAULT_BPM",
    "DEFAULT_PATTERN_LENGTH",
    "DEFAULT_TRACK_VOLUME",
    "DrumStep",
    "FadeCurve",
    "GRID_STEP_BARS",
    "MAX_BPM",
    "MAX_PATTERN_LENGTH",
    "MAX_SWING",
    "MAX_TRACK_VOLUME",
    "MAX_WAVEFORM_PEAKS",
    "MIDI_FORMATS",
    "MIN_BPM",
    "MidiNote",
    "MixerEntry",
    "PLUGIN_NODE_TYPE",
    "Pattern",
    "PluginNode",
    "PluginParameter",
    "Project",
    "PROJECT_VERSION",
    "STEPS_PER_BEAT",
    "TRACK_NAME_LIMIT",
    "TimeSignature",
    "Track",
    "default_track_name",
]
