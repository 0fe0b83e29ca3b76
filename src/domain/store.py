"""Authoritative project store with atomic structural mutations.

Every mutation runs against a deep working copy of the project. The copy is
re-validated and swapped in only when the edit completes, so a failed edit
leaves no observable write behind. Track ids are positional (1..N); the
renumbering helpers keep the mixer and plugin nodes aligned whenever tracks
are inserted, deleted, duplicated or reordered.
"""
from __future__ import annotations

import logging
import math
import mimetypes
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from pydantic import ValidationError

from .models import (
    AUDIO_FORMATS,
    DEFAULT_PATTERN_LENGTH,
    GRID_STEP_BARS,
    MAX_BPM,
    MAX_PATTERN_LENGTH,
    MAX_SWING,
    MAX_TRACK_VOLUME,
    MIDI_FORMATS,
    MIN_BPM,
    PLUGIN_NODE_TYPE,
    STEPS_PER_BEAT,
    TRACK_NAME_LIMIT,
    Clip,
    DrumStep,
    MidiNote,
    MixerEntry,
    Pattern,
    PluginNode,
    PluginParameter,
    Project,
    TimeSignature,
    Track,
)

logger = logging.getLogger(__name__)

DEFAULT_IMPORTED_CLIP_BARS = 8.0
DUPLICATE_NAME_PREFIX = TRACK_NAME_LIMIT - len(" (Copy)")
_MIME_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/aac": "aac",
    "audio/aiff": "aiff",
    "audio/x-aiff": "aiff",
    "audio/midi": "mid",
    "audio/x-midi": "mid",
}


class ProjectEditError(ValueError):
    """Raised when a structural mutation is rejected; the project is untouched."""


class EntityNotFoundError(ProjectEditError):
    """Raised when a mutation references an unknown track, clip, pattern or node."""


@dataclass(frozen=True)
class PluginResolution:
    """Peer-reported identity of a plugin node after it was loaded."""

    node_id: str
    plugin_uid: Optional[str] = None
    plugin_name: Optional[str] = None
    track_id: Optional[int] = None
    plugin_index: Optional[int] = None
    parameter_schema: tuple[PluginParameter, ...] = ()
    params: Dict[str, float] = field(default_factory=dict)


@dataclass
class _Slot:
    """Track placed at a new position; ``origin`` is its id before the edit."""

    track: Track
    origin: Optional[int]
    cloned: bool = False


def snap_to_grid(bars: float) -> float:
    """Round a bar position to the nearest 1/16 bar."""

    return round(round(float(bars) / GRID_STEP_BARS) * GRID_STEP_BARS, 6)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, float(value)))


def _finite(value: float, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ProjectEditError(f"{label} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ProjectEditError(f"{label} must be a finite number, got {value!r}")
    return number


def _default_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class ProjectStore:
    """Single owner of the authoritative :class:`Project`.

    ``project`` returns the live instance; callers treat it as read-only and
    go through the mutation methods. ``snapshot()`` hands out a deep copy.
    """

    def __init__(
        self,
        project: Optional[Project] = None,
        *,
        id_factory: Callable[[str], str] = _default_id,
    ) -> None:
        self._project = project.model_copy(deep=True) if project is not None else Project()
        self._id_factory = id_factory
        self._revision = 0

    @property
    def project(self) -> Project:
        return self._project

    @property
    def revision(self) -> int:
        """Number of committed mutations since construction."""

        return self._revision

    def snapshot(self) -> Project:
        return self._project.model_copy(deep=True)

    def replace(self, project: Project) -> None:
        """Swap in a new authoritative project (load, undo, redo)."""

        self._project = Project.model_validate(project.model_dump())
        self._revision += 1

    # ------------------------------------------------------------------
    # Project-level settings
    def set_bpm(self, bpm: float) -> float:
        value = _finite(bpm, "bpm")
        with self._edit() as project:
            project.bpm = round(clamp(value, MIN_BPM, MAX_BPM), 3)
            return project.bpm

    def set_time_signature(self, numerator: int, denominator: int) -> TimeSignature:
        if not 1 <= int(numerator) <= 16 or not 1 <= int(denominator) <= 32:
            raise ProjectEditError(
                f"Unsupported time signature {numerator}/{denominator}"
            )
        with self._edit() as project:
            project.time_signature = TimeSignature(
                numerator=int(numerator), denominator=int(denominator)
            )
            return project.time_signature

    def rename_project(self, name: str) -> str:
        cleaned = name.strip()
        if not cleaned:
            raise ProjectEditError("Project name must not be empty")
        with self._edit() as project:
            project.project_name = cleaned
            return cleaned

    def update_view(
        self,
        *,
        view_bars: Optional[int] = None,
        bar_width: Optional[int] = None,
        show_track_nodes: Optional[bool] = None,
        metronome_enabled: Optional[bool] = None,
    ) -> Project:
        with self._edit() as project:
            if view_bars is not None:
                project.playlist_view_bars = int(clamp(view_bars, 8, 4096))
            if bar_width is not None:
                project.playlist_bar_width = int(clamp(bar_width, 36, 220))
            if show_track_nodes is not None:
                project.playlist_show_track_nodes = bool(show_track_nodes)
            if metronome_enabled is not None:
                project.metronome_enabled = bool(metronome_enabled)
        return self._project

    # ------------------------------------------------------------------
    # Tracks
    def create_track(self, name: Optional[str] = None) -> Track:
        """Append a track at position N+1."""

        with self._edit() as project:
            slots = self._slots(project)
            track = Track(track_id=len(slots) + 1, name=_clean_name(name))
            slots.append(_Slot(track=track, origin=None))
            self._apply_layout(project, slots)
            return project.tracks[-1]

    def insert_track(self, position: int, name: Optional[str] = None) -> Track:
        """Insert a track so that it receives id ``position`` (clamped to 1..N+1)."""

        with self._edit() as project:
            slots = self._slots(project)
            index = int(clamp(position, 1, len(slots) + 1)) - 1
            track = Track(track_id=index + 1, name=_clean_name(name))
            slots.insert(index, _Slot(track=track, origin=None))
            self._apply_layout(project, slots)
            return project.tracks[index]

    def delete_tracks(self, track_ids: Iterable[int]) -> List[int]:
        """Delete one or more tracks and renumber the survivors.

        Deleting every track leaves a fresh default ``Track 1`` behind.
        """

        targets = sorted(set(int(track_id) for track_id in track_ids))
        if not targets:
            raise ProjectEditError("No track ids supplied for deletion")
        with self._edit() as project:
            for track_id in targets:
                self._require_track(project, track_id)
            slots = [slot for slot in self._slots(project) if slot.origin not in targets]
            if not slots:
                slots.append(_Slot(track=Track(track_id=1), origin=None))
            self._apply_layout(project, slots)
        logger.debug("Deleted tracks %s", targets)
        return targets

    def duplicate_track(self, track_id: int) -> Track:
        """Insert a copy of ``track_id`` directly after it."""

        with self._edit() as project:
            source = self._require_track(project, track_id)
            copy = source.model_copy(deep=True)
            copy.name = f"{source.name[:DUPLICATE_NAME_PREFIX]} (Copy)"
            copy.clips = [
                clip.model_copy(update={"id": self._id_factory("clip")}, deep=True)
                for clip in source.clips
            ]
            slots = self._slots(project)
            index = _slot_index(slots, track_id) + 1
            slots.insert(index, _Slot(track=copy, origin=track_id, cloned=True))
            self._apply_layout(project, slots)
            return project.tracks[index]

    def reorder_track(self, track_id: int, position: int) -> Track:
        """Move ``track_id`` so that it ends up with id ``position`` (clamped)."""

        with self._edit() as project:
            self._require_track(project, track_id)
            slots = self._slots(project)
            moving = slots.pop(_slot_index(slots, track_id))
            index = int(clamp(position, 1, len(slots) + 1)) - 1
            slots.insert(index, moving)
            self._apply_layout(project, slots)
            return project.tracks[index]

    def rename_track(self, track_id: int, name: str) -> Track:
        cleaned = _clean_name(name)
        if not cleaned:
            raise ProjectEditError("Track name must not be empty")
        with self._edit() as project:
            track = self._require_track(project, track_id)
            track.name = cleaned
            return track

    def set_chain_collapsed(self, track_id: int, collapsed: bool) -> Track:
        with self._edit() as project:
            track = self._require_track(project, track_id)
            track.chain_collapsed = bool(collapsed)
            return track

    def set_chain_enabled(self, track_id: int, enabled: bool) -> Track:
        """Enable or bypass a whole plugin chain; node bypass flags follow."""

        with self._edit() as project:
            track = self._require_track(project, track_id)
            track.chain_enabled = bool(enabled)
            for node in project.nodes:
                if node.is_plugin and node.track_id == track_id:
                    node.bypassed = not track.chain_enabled
            return track

    # ------------------------------------------------------------------
    # Clips
    def create_clip(
        self,
        track_id: int,
        pattern_id: str,
        *,
        start: Optional[float] = None,
        length: Optional[float] = None,
    ) -> Clip:
        with self._edit() as project:
            track = self._require_track(project, track_id)
            self._require_pattern(project, pattern_id)
            if start is None:
                start = max((clip.end for clip in track.clips), default=0.0)
            clip = Clip(
                id=self._id_factory("clip"),
                pattern_id=pattern_id,
                start=_clip_start(start),
                length=_clip_length(1.0 if length is None else length),
            )
            track.clips.append(clip)
            return clip

    def import_clip_file(
        self,
        track_id: int,
        source_name: str,
        *,
        source_path: Optional[str] = None,
        source_format: Optional[str] = None,
        source_mime: Optional[str] = None,
        source_size_bytes: Optional[int] = None,
        source_duration_seconds: Optional[float] = None,
        waveform_peaks: Sequence[float] = (),
        start: Optional[float] = None,
        length: Optional[float] = None,
    ) -> Clip:
        """Place an imported audio or MIDI file on a track."""

        resolved = resolve_source_format(source_name, source_format, source_mime)
        if source_duration_seconds is not None:
            source_duration_seconds = _finite(source_duration_seconds, "Source duration")
        clip_type = "midi" if resolved in MIDI_FORMATS else "audio"
        with self._edit() as project:
            track = self._require_track(project, track_id)
            if start is None:
                start = max((clip.end for clip in track.clips), default=0.0)
            if length is None:
                length = _imported_length(project, source_duration_seconds)
            clip = Clip(
                id=self._id_factory("clip"),
                type=clip_type,
                start=_clip_start(start),
                length=_clip_length(length),
                source_name=source_name,
                source_format=resolved,
                source_mime=source_mime or mimetypes.guess_type(source_name)[0],
                source_size_bytes=source_size_bytes,
                source_duration_seconds=source_duration_seconds,
                waveform_peaks=[round(clamp(peak, 0.0, 1.0), 4) for peak in waveform_peaks],
                source_path=source_path,
            )
            track.clips.append(clip)
            return clip

    def move_clip(
        self,
        track_id: int,
        clip_id: str,
        start: float,
        *,
        to_track_id: Optional[int] = None,
    ) -> Clip:
        with self._edit() as project:
            track = self._require_track(project, track_id)
            clip = self._require_clip(track, clip_id)
            clip.start = _clip_start(start)
            if to_track_id is not None and to_track_id != track_id:
                target = self._require_track(project, to_track_id)
                track.clips.remove(clip)
                target.clips.append(clip)
            return clip

    def resize_clip(
        self,
        track_id: int,
        clip_id: str,
        length: float,
        *,
        start: Optional[float] = None,
    ) -> Clip:
        with self._edit() as project:
            clip = self._require_clip(self._require_track(project, track_id), clip_id)
            if start is not None:
                clip.start = _clip_start(start)
            clip.length = _clip_length(length)
            if clip.is_audio:
                limit = project.bars_to_seconds(clip.length) / 2.0
                clip.fade_in = min(clip.fade_in, limit)
                clip.fade_out = min(clip.fade_out, limit)
            return clip

    def set_clip_fade(
        self,
        track_id: int,
        clip_id: str,
        *,
        fade_in: Optional[float] = None,
        fade_out: Optional[float] = None,
        fade_in_curve: Optional[str] = None,
        fade_out_curve: Optional[str] = None,
    ) -> Clip:
        """Set audio clip fades; each fade is capped at half the clip duration."""

        with self._edit() as project:
            clip = self._require_clip(self._require_track(project, track_id), clip_id)
            if not clip.is_audio:
                raise ProjectEditError(f"Clip {clip_id!r} is not an audio clip")
            limit = project.bars_to_seconds(clip.length) / 2.0
            if fade_in is not None:
                clip.fade_in = round(clamp(_finite(fade_in, "Fade in"), 0.0, limit), 4)
            if fade_out is not None:
                clip.fade_out = round(clamp(_finite(fade_out, "Fade out"), 0.0, limit), 4)
            if fade_in_curve is not None:
                clip.fade_in_curve = fade_in_curve  # type: ignore[assignment]
            if fade_out_curve is not None:
                clip.fade_out_curve = fade_out_curve  # type: ignore[assignment]
            return clip

    def delete_clip(self, track_id: int, clip_id: str) -> Clip:
        with self._edit() as project:
            track = self._require_track(project, track_id)
            clip = self._require_clip(track, clip_id)
            track.clips.remove(clip)
            return clip

    # ------------------------------------------------------------------
    # Patterns
    def create_pattern(
        self,
        *,
        pattern_type: str = "drum",
        length: int = DEFAULT_PATTERN_LENGTH,
        swing: float = 0.0,
        steps: Sequence[DrumStep] = (),
        notes: Sequence[MidiNote] = (),
        pattern_id: Optional[str] = None,
    ) -> Pattern:
        with self._edit() as project:
            identifier = pattern_id or self._id_factory("pattern")
            if project.pattern(identifier) is not None:
                raise ProjectEditError(f"Pattern {identifier!r} already exists")
            if pattern_type not in ("drum", "midi"):
                raise ProjectEditError(f"Unsupported pattern type {pattern_type!r}")
            size = int(clamp(length, 1, MAX_PATTERN_LENGTH))
            pattern = Pattern(
                id=identifier,
                type=pattern_type,  # type: ignore[arg-type]
                length=size,
                swing=round(clamp(_finite(swing, "Swing"), 0.0, MAX_SWING), 4),
                steps=_dedupe_steps(step for step in steps if step.index < size),
                notes=[note.model_copy() for note in notes] if pattern_type == "midi" else [],
            )
            project.patterns.append(pattern)
            return pattern

    def update_pattern(
        self,
        pattern_id: str,
        *,
        length: Optional[int] = None,
        swing: Optional[float] = None,
    ) -> Pattern:
        with self._edit() as project:
            pattern = self._require_pattern(project, pattern_id)
            if length is not None:
                pattern.length = int(clamp(length, 1, MAX_PATTERN_LENGTH))
                pattern.steps = [step for step in pattern.steps if step.index < pattern.length]
            if swing is not None:
                pattern.swing = round(clamp(_finite(swing, "Swing"), 0.0, MAX_SWING), 4)
            return pattern

    def update_pattern_step(
        self, pattern_id: str, lane: str, index: int, velocity: float
    ) -> Pattern:
        """Set one drum cell; a velocity of zero or less clears it."""

        velocity = _finite(velocity, "Step velocity")
        with self._edit() as project:
            pattern = self._require_pattern(project, pattern_id)
            if pattern.type != "drum":
                raise ProjectEditError(f"Pattern {pattern_id!r} is not a drum pattern")
            if not 0 <= int(index) < pattern.length:
                raise ProjectEditError(
                    f"Step {index} outside pattern {pattern_id!r} length {pattern.length}"
                )
            remaining = [
                step
                for step in pattern.steps
                if not (step.lane == lane and step.index == int(index))
            ]
            if velocity > 0:
                remaining.append(
                    DrumStep(lane=lane, index=int(index), velocity=clamp(velocity, 0.01, 1.0))
                )
            pattern.steps = sorted(remaining, key=lambda step: (step.index, step.lane))
            return pattern

    def move_midi_note(
        self,
        pattern_id: str,
        note_id: str,
        *,
        start: Optional[float] = None,
        pitch: Optional[int] = None,
        length: Optional[float] = None,
    ) -> MidiNote:
        with self._edit() as project:
            pattern = self._require_pattern(project, pattern_id)
            if pattern.type != "midi":
                raise ProjectEditError(f"Pattern {pattern_id!r} is not a MIDI pattern")
            note = next((note for note in pattern.notes if note.id == note_id), None)
            if note is None:
                raise EntityNotFoundError(f"Note {note_id!r} not found in {pattern_id!r}")
            if length is not None:
                note.length = clamp(
                    _finite(length, "Note length"), 1.0 / STEPS_PER_BEAT, pattern.length
                )
            if start is not None:
                note.start = clamp(
                    _finite(start, "Note start"), 0.0, max(0.0, pattern.length - note.length)
                )
            if pitch is not None:
                note.pitch = int(clamp(pitch, 0, 127))
            return note

    def delete_pattern(self, pattern_id: str) -> int:
        """Remove a pattern and every clip referencing it; return the clip count."""

        with self._edit() as project:
            pattern = self._require_pattern(project, pattern_id)
            project.patterns.remove(pattern)
            removed = 0
            for track in project.tracks:
                kept = [clip for clip in track.clips if clip.pattern_id != pattern_id]
                removed += len(track.clips) - len(kept)
                track.clips = kept
        logger.debug("Deleted pattern %s with %d clip(s)", pattern_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Mixer
    def set_volume(self, track_id: int, volume: float) -> MixerEntry:
        level = clamp(_finite(volume, "Volume"), 0.0, MAX_TRACK_VOLUME)
        return self._update_mixer(track_id, volume=round(level, 4))

    def set_pan(self, track_id: int, pan: float) -> MixerEntry:
        position = clamp(_finite(pan, "Pan"), -1.0, 1.0)
        return self._update_mixer(track_id, pan=round(position, 4))

    def set_mute(self, track_id: int, mute: bool) -> MixerEntry:
        return self._update_mixer(track_id, mute=bool(mute))

    def set_solo(self, track_id: int, solo: bool) -> MixerEntry:
        return self._update_mixer(track_id, solo=bool(solo))

    def set_record_arm(self, track_id: int, armed: bool) -> MixerEntry:
        return self._update_mixer(track_id, record_armed=bool(armed))

    # ------------------------------------------------------------------
    # Plugin nodes
    def add_plugin_node(
        self,
        track_id: int,
        *,
        plugin_uid: Optional[str] = None,
        name: Optional[str] = None,
        plugin_kind: str = "instrument",
        plugin_type: Optional[str] = None,
        insert_index: Optional[int] = None,
        parameter_schema: Sequence[PluginParameter] = (),
        params: Optional[Dict[str, float]] = None,
    ) -> PluginNode:
        if not plugin_uid and not name:
            raise ProjectEditError("A plugin node needs a plugin uid or name")
        with self._edit() as project:
            self._require_track(project, track_id)
            chain = project.plugin_nodes_for_track(track_id)
            index = len(chain) if insert_index is None else int(clamp(insert_index, 0, len(chain)))
            node = PluginNode(
                id=self._id_factory("node"),
                type=PLUGIN_NODE_TYPE,
                plugin=name or plugin_uid,
                plugin_uid=plugin_uid,
                plugin_type=plugin_type,
                plugin_kind=plugin_kind,  # type: ignore[arg-type]
                track_id=track_id,
                parameter_schema=list(parameter_schema),
                params=dict(params or {}),
            )
            chain.insert(index, node)
            project.nodes.append(node)
            _reindex_chain(chain)
            return node

    def remove_plugin_node(self, node_id: str) -> PluginNode:
        with self._edit() as project:
            node = self._require_node(project, node_id)
            project.nodes.remove(node)
            if node.track_id is not None:
                _reindex_chain(project.plugin_nodes_for_track(node.track_id))
            return node

    def reorder_plugin_nodes(self, track_id: int, from_index: int, to_index: int) -> List[PluginNode]:
        with self._edit() as project:
            self._require_track(project, track_id)
            chain = project.plugin_nodes_for_track(track_id)
            if not 0 <= from_index < len(chain):
                raise EntityNotFoundError(
                    f"Track {track_id} has no plugin at index {from_index}"
                )
            moving = chain.pop(from_index)
            chain.insert(int(clamp(to_index, 0, len(chain))), moving)
            _reindex_chain(chain)
            return chain

    def set_plugin_parameter(self, node_id: str, param_id: str, value: float) -> float:
        """Store a parameter value, clamped to the schema range when known."""

        with self._edit() as project:
            node = self._require_node(project, node_id)
            schema_entry = next(
                (entry for entry in node.parameter_schema if entry.id == param_id), None
            )
            resolved = _finite(value, f"Parameter {param_id!r}")
            if schema_entry is not None:
                resolved = clamp(resolved, schema_entry.min, schema_entry.max)
            node.params[param_id] = resolved
            return resolved

    def set_plugin_bypass(self, node_id: str, bypassed: bool) -> PluginNode:
        with self._edit() as project:
            node = self._require_node(project, node_id)
            node.bypassed = bool(bypassed)
            return node

    def apply_plugin_resolutions(self, resolutions: Iterable[PluginResolution]) -> int:
        """Fold peer-reported plugin identities back into the nodes.

        Unknown node ids are skipped (the node may have been removed while
        the peer was loading it). Placement stays with the store: a
        resolution reports where the peer loaded the plugin, which may be
        out of date once later edits have moved the node, so ``track_id``
        and ``plugin_index`` are never written back. Returns the number of
        nodes updated.
        """

        updated = 0
        with self._edit() as project:
            for resolution in resolutions:
                node = project.node(resolution.node_id)
                if node is None:
                    continue
                if resolution.plugin_uid:
                    node.plugin_uid = resolution.plugin_uid
                if resolution.plugin_name:
                    node.plugin = resolution.plugin_name
                if resolution.parameter_schema:
                    node.parameter_schema = list(resolution.parameter_schema)
                node.params.update(resolution.params)
                updated += 1
        return updated

    # ------------------------------------------------------------------
    # Internal helpers
    @contextmanager
    def _edit(self) -> Iterator[Project]:
        working = self._project.model_copy(deep=True)
        yield working
        try:
            committed = Project.model_validate(working.model_dump())
        except ValidationError as exc:
            raise ProjectEditError(f"Edit rejected: {exc.errors()[0]['msg']}") from exc
        self._project = committed
        self._revision += 1

    def _update_mixer(self, track_id: int, **changes: object) -> MixerEntry:
        with self._edit() as project:
            self._require_track(project, track_id)
            entry = project.mixer_entry(track_id)
            if entry is None:
                entry = MixerEntry(track_id=track_id)
                project.mixer.append(entry)
                project.mixer.sort(key=lambda item: item.track_id)
            for key, value in changes.items():
                setattr(entry, key, value)
            return entry

    def _slots(self, project: Project) -> List[_Slot]:
        ordered = sorted(project.tracks, key=lambda track: track.track_id)
        return [_Slot(track=track, origin=track.track_id) for track in ordered]

    def _apply_layout(self, project: Project, slots: List[_Slot]) -> None:
        """Renumber tracks to 1..N and realign mixer entries and plugin nodes."""

        old_mixer = {entry.track_id: entry for entry in project.mixer}
        moved: Dict[int, int] = {}
        tracks: List[Track] = []
        mixer: List[MixerEntry] = []
        clones: List[PluginNode] = []
        for position, slot in enumerate(slots, start=1):
            slot.track.track_id = position
            tracks.append(slot.track)
            source = old_mixer.get(slot.origin) if slot.origin is not None else None
            if source is not None:
                mixer.append(source.model_copy(update={"track_id": position}))
            else:
                mixer.append(MixerEntry(track_id=position))
            if slot.origin is None:
                continue
            if slot.cloned:
                for node in project.nodes:
                    if node.track_id == slot.origin:
                        clones.append(
                            node.model_copy(
                                update={"id": self._id_factory("node"), "track_id": position},
                                deep=True,
                            )
                        )
            else:
                moved[slot.origin] = position

        nodes: List[PluginNode] = []
        for node in project.nodes:
            if node.track_id is None:
                nodes.append(node)
            elif node.track_id in moved:
                node.track_id = moved[node.track_id]
                nodes.append(node)
        nodes.extend(clones)

        project.tracks = tracks
        project.mixer = mixer
        project.nodes = nodes
        for track in tracks:
            _reindex_chain(project.plugin_nodes_for_track(track.track_id))

    @staticmethod
    def _require_track(project: Project, track_id: int) -> Track:
        track = project.track(int(track_id))
        if track is None:
            raise EntityNotFoundError(f"Track {track_id} not found")
        return track

    @staticmethod
    def _require_clip(track: Track, clip_id: str) -> Clip:
        clip = track.clip(clip_id)
        if clip is None:
            raise EntityNotFoundError(f"Clip {clip_id!r} not found on track {track.track_id}")
        return clip

    @staticmethod
    def _require_pattern(project: Project, pattern_id: str) -> Pattern:
        pattern = project.pattern(pattern_id)
        if pattern is None:
            raise EntityNotFoundError(f"Pattern {pattern_id!r} not found")
        return pattern

    @staticmethod
    def _require_node(project: Project, node_id: str) -> PluginNode:
        node = project.node(node_id)
        if node is None or not node.is_plugin:
            raise EntityNotFoundError(f"Plugin node {node_id!r} not found")
        return node


def resolve_source_format(
    source_name: str,
    source_format: Optional[str] = None,
    source_mime: Optional[str] = None,
) -> str:
    """Infer the import format from an explicit value, the file name or its mime type."""

    candidates = [
        (source_format or "").lower().lstrip("."),
        PurePath(source_name).suffix.lower().lstrip("."),
        _MIME_FORMATS.get((source_mime or "").lower(), ""),
    ]
    for candidate in candidates:
        if candidate in AUDIO_FORMATS or candidate in MIDI_FORMATS:
            return candidate
    raise ProjectEditError(f"Unsupported import format for {source_name!r}")


def _slot_index(slots: List[_Slot], track_id: int) -> int:
    return next(index for index, slot in enumerate(slots) if slot.origin == track_id)


def _clean_name(name: Optional[str]) -> str:
    return (name or "").strip()[:TRACK_NAME_LIMIT]


def _clip_start(value: float) -> float:
    return max(0.0, snap_to_grid(_finite(value, "Clip start")))


def _clip_length(value: float) -> float:
    return max(GRID_STEP_BARS, snap_to_grid(_finite(value, "Clip length")))


def _imported_length(project: Project, duration_seconds: Optional[float]) -> float:
    if not duration_seconds or duration_seconds <= 0:
        return DEFAULT_IMPORTED_CLIP_BARS
    bars = duration_seconds * project.bpm / 60.0 / project.beats_per_bar
    return math.ceil(bars / GRID_STEP_BARS) * GRID_STEP_BARS


def _dedupe_steps(steps: Iterable[DrumStep]) -> List[DrumStep]:
    cells: Dict[tuple[str, int], DrumStep] = {}
    for step in steps:
        cells[(step.lane, step.index)] = step.model_copy()
    return sorted(cells.values(), key=lambda step: (step.index, step.lane))


def _reindex_chain(chain: List[PluginNode]) -> None:
    for index, node in enumerate(chain):
        node.plugin_index = index


__all__ = [
    "DEFAULT_IMPORTED_CLIP_BARS",
    "EntityNotFoundError",
    "PluginResolution",
    "ProjectEditError",
    "ProjectStore",
    "clamp",
    "resolve_source_format",
    "snap_to_grid",
]
