"""Typed request structs for inbound mutation payloads.

Clients send loosely shaped dictionaries (``trackId`` vs ``track_id``,
``pattern`` vs ``patternId`` and so on). The structs below normalize those
variants once at the boundary so the store only ever sees typed values.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .models import DEFAULT_PATTERN_LENGTH, DrumStep, MidiNote

RequestT = TypeVar("RequestT", bound="MutationRequest")


class InvalidRequestError(ValueError):
    """Raised when an inbound payload cannot be coerced into a request."""


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


_TRACK_ID = _alias("track_id", "trackId", "track")
_CLIP_ID = _alias("clip_id", "clipId", "id")
_PATTERN_ID = _alias("pattern_id", "patternId", "pattern", "id")
_NODE_ID = _alias("node_id", "nodeId", "id")


class MutationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", allow_inf_nan=False)


def parse_request(model: Type[RequestT], payload: Optional[Dict[str, Any]]) -> RequestT:
    """Validate ``payload`` into ``model`` or raise :class:`InvalidRequestError`."""

    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) or "<payload>" for error in exc.errors()
        )
        raise InvalidRequestError(f"Invalid {model.__name__}: {fields}") from exc


# ----------------------------------------------------------------------
# Project-level
class SetBpmRequest(MutationRequest):
    bpm: float


class SetTimeSignatureRequest(MutationRequest):
    numerator: int
    denominator: int


class RenameProjectRequest(MutationRequest):
    name: str = Field(..., validation_alias=_alias("name", "project_name", "projectName"))


class UpdateViewRequest(MutationRequest):
    view_bars: Optional[int] = Field(
        None, validation_alias=_alias("view_bars", "playlist_view_bars", "playlistViewBars")
    )
    bar_width: Optional[int] = Field(
        None, validation_alias=_alias("bar_width", "playlist_bar_width", "playlistBarWidth")
    )
    show_track_nodes: Optional[bool] = Field(
        None,
        validation_alias=_alias(
            "show_track_nodes", "playlist_show_track_nodes", "playlistShowTrackNodes"
        ),
    )
    metronome_enabled: Optional[bool] = Field(
        None, validation_alias=_alias("metronome_enabled", "metronomeEnabled", "metronome")
    )


# ----------------------------------------------------------------------
# Tracks
class CreateTrackRequest(MutationRequest):
    name: Optional[str] = None


class InsertTrackRequest(MutationRequest):
    position: int = Field(..., validation_alias=_alias("position", "track_id", "trackId", "index"))
    name: Optional[str] = None


class DeleteTracksRequest(MutationRequest):
    track_ids: List[int] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def collect_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        ids = data.get("track_ids", data.get("trackIds"))
        if ids is None:
            single = next(
                (data[key] for key in ("track_id", "trackId", "track") if key in data), None
            )
            ids = [] if single is None else [single]
        return {"track_ids": ids}


class TrackRequest(MutationRequest):
    track_id: int = Field(..., ge=1, validation_alias=_TRACK_ID)


class ReorderTrackRequest(TrackRequest):
    position: int = Field(
        ..., validation_alias=_alias("position", "to_position", "toPosition", "to_track_id")
    )


class RenameTrackRequest(TrackRequest):
    name: str


class ChainCollapsedRequest(TrackRequest):
    collapsed: bool = Field(..., validation_alias=_alias("collapsed", "chain_collapsed", "value"))


class ChainEnabledRequest(TrackRequest):
    enabled: bool = Field(..., validation_alias=_alias("enabled", "chain_enabled", "value"))


# ----------------------------------------------------------------------
# Clips
class CreateClipRequest(TrackRequest):
    pattern_id: str = Field(..., validation_alias=_alias("pattern_id", "patternId", "pattern"))
    start: Optional[float] = None
    length: Optional[float] = None


class ImportClipRequest(TrackRequest):
    source_name: str = Field(
        ..., validation_alias=_alias("source_name", "sourceName", "file_name", "fileName", "name")
    )
    source_path: Optional[str] = Field(
        None, validation_alias=_alias("source_path", "sourcePath", "path")
    )
    source_format: Optional[str] = Field(
        None, validation_alias=_alias("source_format", "sourceFormat", "format")
    )
    source_mime: Optional[str] = Field(
        None, validation_alias=_alias("source_mime", "sourceMime", "mime")
    )
    source_size_bytes: Optional[int] = Field(
        None, validation_alias=_alias("source_size_bytes", "sourceSizeBytes", "size")
    )
    source_duration_seconds: Optional[float] = Field(
        None,
        validation_alias=_alias("source_duration_seconds", "sourceDurationSeconds", "duration"),
    )
    waveform_peaks: List[float] = Field(
        default_factory=list, validation_alias=_alias("waveform_peaks", "waveformPeaks", "peaks")
    )
    start: Optional[float] = None
    length: Optional[float] = None


class ClipRequest(TrackRequest):
    clip_id: str = Field(..., validation_alias=_CLIP_ID)


class MoveClipRequest(ClipRequest):
    start: float
    to_track_id: Optional[int] = Field(
        None, validation_alias=_alias("to_track_id", "toTrackId", "target_track_id")
    )


class ResizeClipRequest(ClipRequest):
    length: float
    start: Optional[float] = None


class ClipFadeRequest(ClipRequest):
    fade_in: Optional[float] = Field(None, validation_alias=_alias("fade_in", "fadeIn"))
    fade_out: Optional[float] = Field(None, validation_alias=_alias("fade_out", "fadeOut"))
    fade_in_curve: Optional[str] = Field(
        None, validation_alias=_alias("fade_in_curve", "fadeInCurve")
    )
    fade_out_curve: Optional[str] = Field(
        None, validation_alias=_alias("fade_out_curve", "fadeOutCurve")
    )


# ----------------------------------------------------------------------
# Patterns
class CreatePatternRequest(MutationRequest):
    pattern_type: str = Field("drum", validation_alias=_alias("pattern_type", "type"))
    length: int = DEFAULT_PATTERN_LENGTH
    swing: float = 0.0
    steps: List[DrumStep] = Field(default_factory=list)
    notes: List[MidiNote] = Field(default_factory=list)
    pattern_id: Optional[str] = Field(None, validation_alias=_PATTERN_ID)


class PatternRequest(MutationRequest):
    pattern_id: str = Field(..., validation_alias=_PATTERN_ID)


class UpdatePatternRequest(PatternRequest):
    length: Optional[int] = None
    swing: Optional[float] = None


class PatternStepRequest(PatternRequest):
    lane: str
    index: int = Field(..., ge=0, validation_alias=_alias("index", "step"))
    velocity: float = 1.0


class MoveMidiNoteRequest(PatternRequest):
    note_id: str = Field(..., validation_alias=_alias("note_id", "noteId"))
    start: Optional[float] = None
    pitch: Optional[int] = None
    length: Optional[float] = None


# ----------------------------------------------------------------------
# Mixer
class VolumeRequest(TrackRequest):
    volume: float = Field(..., validation_alias=_alias("volume", "value"))


class PanRequest(TrackRequest):
    pan: float = Field(..., validation_alias=_alias("pan", "value"))


class MuteRequest(TrackRequest):
    mute: bool = Field(..., validation_alias=_alias("mute", "muted", "value"))


class SoloRequest(TrackRequest):
    solo: bool = Field(..., validation_alias=_alias("solo", "value"))


class RecordArmRequest(TrackRequest):
    record_armed: bool = Field(
        ..., validation_alias=_alias("record_armed", "recordArmed", "armed", "value")
    )


# ----------------------------------------------------------------------
# Plugins
class AddPluginRequest(TrackRequest):
    plugin_uid: Optional[str] = Field(
        None, validation_alias=_alias("plugin_uid", "pluginUid", "uid")
    )
    name: Optional[str] = Field(None, validation_alias=_alias("name", "plugin"))
    plugin_kind: Optional[str] = Field(
        None, validation_alias=_alias("plugin_kind", "pluginKind", "kind")
    )
    insert_index: Optional[int] = Field(
        None, ge=0, validation_alias=_alias("insert_index", "insertIndex", "index")
    )

    @model_validator(mode="after")
    def require_identity(self) -> AddPluginRequest:
        if not self.plugin_uid and not self.name:
            raise ValueError("plugin uid or name required")
        return self


class PluginNodeRequest(MutationRequest):
    node_id: str = Field(..., validation_alias=_NODE_ID)


class ReorderPluginsRequest(TrackRequest):
    from_index: int = Field(..., ge=0, validation_alias=_alias("from_index", "fromIndex"))
    to_index: int = Field(..., ge=0, validation_alias=_alias("to_index", "toIndex"))


class PluginParameterRequest(PluginNodeRequest):
    param_id: str = Field(
        ..., validation_alias=_alias("param_id", "paramId", "parameter_id", "parameterId")
    )
    value: float


class PluginBypassRequest(PluginNodeRequest):
    bypassed: bool = Field(..., validation_alias=_alias("bypassed", "bypass", "value"))


# ----------------------------------------------------------------------
# Transport
class SeekRequest(MutationRequest):
    position_beats: float = Field(
        ..., ge=0.0, validation_alias=_alias("position_beats", "positionBeats", "beats")
    )


__all__ = [
    "AddPluginRequest",
    "ChainCollapsedRequest",
    "ChainEnabledRequest",
    "ClipFadeRequest",
    "ClipRequest",
    "CreateClipRequest",
    "CreatePatternRequest",
    "CreateTrackRequest",
    "DeleteTracksRequest",
    "ImportClipRequest",
    "InsertTrackRequest",
    "InvalidRequestError",
    "MoveClipRequest",
    "MoveMidiNoteRequest",
    "MuteRequest",
    "MutationRequest",
    "PanRequest",
    "PatternRequest",
    "PatternStepRequest",
    "PluginBypassRequest",
    "PluginNodeRequest",
    "PluginParameterRequest",
    "RecordArmRequest",
    "RenameProjectRequest",
    "RenameTrackRequest",
    "ReorderPluginsRequest",
    "ReorderTrackRequest",
    "ResizeClipRequest",
    "SeekRequest",
    "SetBpmRequest",
    "SetTimeSignatureRequest",
    "SoloRequest",
    "TrackRequest",
    "UpdatePatternRequest",
    "UpdateViewRequest",
    "VolumeRequest",
    "parse_request",
]
