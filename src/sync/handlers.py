"""Named structural mutations routed by the engine session.

Each handler validates its payload into a request struct, applies the edit
to the store and returns a :class:`MutationOutcome` telling the session how
the peer must follow: direct commands (mixer, parameters), an arrangement
resync (clip geometry) or a full resync (track layout, plugin chains).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from audio.analysis import describe_audio_file
from audio.envelope import DISPLAY_ENVELOPE_BUCKETS, MAX_ENVELOPE_BUCKETS, resample_envelope
from bridge.client import BridgeError
from bridge.protocol import Command
from domain.requests import (
    AddPluginRequest,
    ChainCollapsedRequest,
    ChainEnabledRequest,
    ClipFadeRequest,
    ClipRequest,
    CreateClipRequest,
    CreatePatternRequest,
    CreateTrackRequest,
    DeleteTracksRequest,
    ImportClipRequest,
    InsertTrackRequest,
    MoveClipRequest,
    MoveMidiNoteRequest,
    MuteRequest,
    PanRequest,
    PatternRequest,
    PatternStepRequest,
    PluginBypassRequest,
    PluginNodeRequest,
    PluginParameterRequest,
    RecordArmRequest,
    RenameProjectRequest,
    RenameTrackRequest,
    ReorderPluginsRequest,
    ReorderTrackRequest,
    ResizeClipRequest,
    SetBpmRequest,
    SetTimeSignatureRequest,
    SoloRequest,
    TrackRequest,
    UpdatePatternRequest,
    UpdateViewRequest,
    VolumeRequest,
    parse_request,
)
from domain.store import EntityNotFoundError

from .reconcile import ResyncScope, parse_parameter_schema

if TYPE_CHECKING:
    from .session import SyncSession

logger = logging.getLogger(__name__)

PeerCommand = Tuple[str, Dict[str, Any]]


@dataclass
class MutationOutcome:
    result: Any = None
    scope: Optional[ResyncScope] = None
    commands: List[PeerCommand] = field(default_factory=list)


Handler = Callable[["SyncSession", Dict[str, Any]], Awaitable[MutationOutcome]]
MUTATIONS: Dict[str, Handler] = {}


class UnknownMutationError(KeyError):
    """Raised when a mutation name has no registered handler."""


def mutation(name: str) -> Callable[[Handler], Handler]:
    def register(handler: Handler) -> Handler:
        MUTATIONS[name] = handler
        return handler

    return register


def resolve_handler(name: str) -> Handler:
    try:
        return MUTATIONS[name]
    except KeyError as exc:
        raise UnknownMutationError(name) from exc


# ----------------------------------------------------------------------
# Project
@mutation("project:bpm")
async def set_bpm(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(SetBpmRequest, payload)
    bpm = session.store.set_bpm(request.bpm)
    session.clock.set_bpm(bpm)
    return MutationOutcome(
        bpm, ResyncScope.ARRANGEMENT, [(Command.TRANSPORT_SET_BPM, {"bpm": bpm})]
    )


@mutation("project:time-signature")
async def set_time_signature(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(SetTimeSignatureRequest, payload)
    signature = session.store.set_time_signature(request.numerator, request.denominator)
    session.clock.set_time_signature(signature.numerator, signature.denominator)
    return MutationOutcome(signature, ResyncScope.ARRANGEMENT)


@mutation("project:rename")
async def rename_project(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(RenameProjectRequest, payload)
    return MutationOutcome(session.store.rename_project(request.name))


@mutation("project:view")
async def update_view(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(UpdateViewRequest, payload)
    session.store.update_view(
        view_bars=request.view_bars,
        bar_width=request.bar_width,
        show_track_nodes=request.show_track_nodes,
        metronome_enabled=request.metronome_enabled,
    )
    return MutationOutcome()


# ----------------------------------------------------------------------
# Tracks
@mutation("track:create")
async def create_track(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(CreateTrackRequest, payload)
    return MutationOutcome(session.store.create_track(request.name), ResyncScope.FULL)


@mutation("track:insert")
async def insert_track(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(InsertTrackRequest, payload)
    track = session.store.insert_track(request.position, request.name)
    return MutationOutcome(track, ResyncScope.FULL)


@mutation("track:delete")
async def delete_tracks(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(DeleteTracksRequest, payload)
    return MutationOutcome(session.store.delete_tracks(request.track_ids), ResyncScope.FULL)


@mutation("track:duplicate")
async def duplicate_track(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(TrackRequest, payload)
    return MutationOutcome(session.store.duplicate_track(request.track_id), ResyncScope.FULL)


@mutation("track:reorder")
async def reorder_track(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ReorderTrackRequest, payload)
    track = session.store.reorder_track(request.track_id, request.position)
    return MutationOutcome(track, ResyncScope.FULL)


@mutation("track:rename")
async def rename_track(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(RenameTrackRequest, payload)
    return MutationOutcome(session.store.rename_track(request.track_id, request.name))


@mutation("track:chain-collapse")
async def set_chain_collapsed(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ChainCollapsedRequest, payload)
    track = session.store.set_chain_collapsed(request.track_id, request.collapsed)
    return MutationOutcome(track)


@mutation("track:chain-enable")
async def set_chain_enabled(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ChainEnabledRequest, payload)
    track = session.store.set_chain_enabled(request.track_id, request.enabled)
    return MutationOutcome(track, ResyncScope.FULL)


# ----------------------------------------------------------------------
# Clips
@mutation("clip:create")
async def create_clip(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(CreateClipRequest, payload)
    clip = session.store.create_clip(
        request.track_id, request.pattern_id, start=request.start, length=request.length
    )
    return MutationOutcome(clip)


@mutation("clip:import")
async def import_clip(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    """Import a file clip; missing duration/peaks are precomputed from the file."""

    request = parse_request(ImportClipRequest, payload)
    peaks = list(request.waveform_peaks)
    duration = request.source_duration_seconds
    if request.source_path and (not peaks or not duration):
        description = await asyncio.to_thread(describe_audio_file, request.source_path)
        if description is not None:
            peaks = peaks or description.peaks
            duration = duration or description.duration_seconds
    if len(peaks) > MAX_ENVELOPE_BUCKETS:
        peaks = resample_envelope(peaks, DISPLAY_ENVELOPE_BUCKETS)
    clip = session.store.import_clip_file(
        request.track_id,
        request.source_name,
        source_path=request.source_path,
        source_format=request.source_format,
        source_mime=request.source_mime,
        source_size_bytes=request.source_size_bytes,
        source_duration_seconds=duration,
        waveform_peaks=peaks,
        start=request.start,
        length=request.length,
    )
    return MutationOutcome(clip, ResyncScope.ARRANGEMENT if clip.is_audio else None)


@mutation("clip:move")
async def move_clip(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(MoveClipRequest, payload)
    clip = session.store.move_clip(
        request.track_id, request.clip_id, request.start, to_track_id=request.to_track_id
    )
    return MutationOutcome(clip, _audio_scope(clip))


@mutation("clip:resize")
async def resize_clip(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ResizeClipRequest, payload)
    clip = session.store.resize_clip(
        request.track_id, request.clip_id, request.length, start=request.start
    )
    return MutationOutcome(clip, _audio_scope(clip))


@mutation("clip:fade")
async def set_clip_fade(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ClipFadeRequest, payload)
    clip = session.store.set_clip_fade(
        request.track_id,
        request.clip_id,
        fade_in=request.fade_in,
        fade_out=request.fade_out,
        fade_in_curve=request.fade_in_curve,
        fade_out_curve=request.fade_out_curve,
    )
    return MutationOutcome(clip, ResyncScope.ARRANGEMENT)


@mutation("clip:delete")
async def delete_clip(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ClipRequest, payload)
    clip = session.store.delete_clip(request.track_id, request.clip_id)
    return MutationOutcome(clip, _audio_scope(clip))


# ----------------------------------------------------------------------
# Patterns
@mutation("pattern:create")
async def create_pattern(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(CreatePatternRequest, payload)
    pattern = session.store.create_pattern(
        pattern_type=request.pattern_type,
        length=request.length,
        swing=request.swing,
        steps=request.steps,
        notes=request.notes,
        pattern_id=request.pattern_id,
    )
    return MutationOutcome(pattern)


@mutation("pattern:update")
async def update_pattern(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(UpdatePatternRequest, payload)
    pattern = session.store.update_pattern(
        request.pattern_id, length=request.length, swing=request.swing
    )
    return MutationOutcome(pattern)


@mutation("pattern:step")
async def update_pattern_step(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PatternStepRequest, payload)
    pattern = session.store.update_pattern_step(
        request.pattern_id, request.lane, request.index, request.velocity
    )
    return MutationOutcome(pattern)


@mutation("pattern:note-move")
async def move_midi_note(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(MoveMidiNoteRequest, payload)
    note = session.store.move_midi_note(
        request.pattern_id,
        request.note_id,
        start=request.start,
        pitch=request.pitch,
        length=request.length,
    )
    return MutationOutcome(note)


@mutation("pattern:delete")
async def delete_pattern(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PatternRequest, payload)
    return MutationOutcome(session.store.delete_pattern(request.pattern_id))


# ----------------------------------------------------------------------
# Mixer
@mutation("mixer:volume")
async def set_volume(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(VolumeRequest, payload)
    entry = session.store.set_volume(request.track_id, request.volume)
    return MutationOutcome(
        entry,
        commands=[(Command.TRACK_SET_VOLUME, {"track_id": entry.track_id, "volume": entry.volume})],
    )


@mutation("mixer:pan")
async def set_pan(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PanRequest, payload)
    entry = session.store.set_pan(request.track_id, request.pan)
    return MutationOutcome(
        entry, commands=[(Command.TRACK_SET_PAN, {"track_id": entry.track_id, "pan": entry.pan})]
    )


@mutation("mixer:mute")
async def set_mute(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(MuteRequest, payload)
    entry = session.store.set_mute(request.track_id, request.mute)
    return MutationOutcome(
        entry,
        commands=[(Command.TRACK_SET_MUTE, {"track_id": entry.track_id, "mute": entry.mute})],
    )


@mutation("mixer:solo")
async def set_solo(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(SoloRequest, payload)
    entry = session.store.set_solo(request.track_id, request.solo)
    return MutationOutcome(
        entry,
        commands=[(Command.TRACK_SET_SOLO, {"track_id": entry.track_id, "solo": entry.solo})],
    )


@mutation("mixer:record-arm")
async def set_record_arm(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(RecordArmRequest, payload)
    entry = session.store.set_record_arm(request.track_id, request.record_armed)
    return MutationOutcome(
        entry,
        commands=[
            (
                Command.TRACK_SET_RECORD_ARM,
                {"track_id": entry.track_id, "record_armed": entry.record_armed},
            )
        ],
    )


# ----------------------------------------------------------------------
# Plugins
@mutation("plugin:add")
async def add_plugin(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    """Add a plugin node; with a live peer the plugin is loaded first.

    The peer appends new plugins to the end of the chain, so an explicit
    insert position triggers a full resync to lay the chain out again.
    """

    request = parse_request(AddPluginRequest, payload)
    if session.store.project.track(request.track_id) is None:
        raise EntityNotFoundError(f"Track {request.track_id} not found")
    kind = request.plugin_kind or "instrument"
    if not session.peer_active:
        node = session.store.add_plugin_node(
            request.track_id,
            plugin_uid=request.plugin_uid,
            name=request.name,
            plugin_kind=kind,
            insert_index=request.insert_index,
        )
        return MutationOutcome(node)

    uid = request.plugin_uid or request.name or ""
    descriptor = None
    if session.catalog is not None:
        try:
            descriptor = await session.catalog.lookup(uid)
        except BridgeError as exc:
            logger.debug("Plugin catalog unavailable for %s: %s", uid, exc)
    if descriptor is not None and request.plugin_kind is None:
        kind = descriptor.kind
    loaded = await session.link_request(
        Command.VST_LOAD, {"plugin_uid": uid, "track_id": request.track_id}
    )
    info = loaded.get("plugin") if isinstance(loaded.get("plugin"), dict) else {}
    schema = parse_parameter_schema(info.get("parameters"))
    chain_length = len(session.store.project.plugin_nodes_for_track(request.track_id))
    node = session.store.add_plugin_node(
        request.track_id,
        plugin_uid=str(info.get("uid") or uid),
        name=str(info.get("name") or (descriptor.name if descriptor else None) or uid),
        plugin_kind=kind,
        insert_index=request.insert_index,
        parameter_schema=schema,
        params={entry.id: entry.value for entry in schema},
    )
    reordered = request.insert_index is not None and request.insert_index < chain_length
    return MutationOutcome(node, ResyncScope.FULL if reordered else None)


@mutation("plugin:remove")
async def remove_plugin(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PluginNodeRequest, payload)
    return MutationOutcome(session.store.remove_plugin_node(request.node_id), ResyncScope.FULL)


@mutation("plugin:reorder")
async def reorder_plugins(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(ReorderPluginsRequest, payload)
    chain = session.store.reorder_plugin_nodes(
        request.track_id, request.from_index, request.to_index
    )
    return MutationOutcome(chain, ResyncScope.FULL)


@mutation("plugin:param")
async def set_plugin_parameter(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PluginParameterRequest, payload)
    value = session.store.set_plugin_parameter(request.node_id, request.param_id, request.value)
    node = session.store.project.node(request.node_id)
    commands: List[PeerCommand] = []
    if node is not None and node.track_id is not None:
        commands.append(
            (
                Command.VST_PARAM_SET,
                {
                    "track_id": node.track_id,
                    "plugin_index": node.plugin_index or 0,
                    "param_id": request.param_id,
                    "value": value,
                },
            )
        )
    return MutationOutcome(value, commands=commands)


@mutation("plugin:bypass")
async def set_plugin_bypass(session: SyncSession, payload: Dict[str, Any]) -> MutationOutcome:
    request = parse_request(PluginBypassRequest, payload)
    node = session.store.set_plugin_bypass(request.node_id, request.bypassed)
    commands: List[PeerCommand] = []
    if node.track_id is not None:
        commands.append(
            (
                Command.VST_BYPASS_SET,
                {
                    "track_id": node.track_id,
                    "plugin_index": node.plugin_index or 0,
                    "bypassed": node.bypassed,
                },
            )
        )
    return MutationOutcome(node, commands=commands)


def _audio_scope(clip: Any) -> Optional[ResyncScope]:
    return ResyncScope.ARRANGEMENT if getattr(clip, "is_audio", False) else None


__all__ = [
    "Handler",
    "MUTATIONS",
    "MutationOutcome",
    "UnknownMutationError",
    "mutation",
    "resolve_handler",
]
