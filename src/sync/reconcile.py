"""Best-effort resynchronisation of the native peer with the project.

A full pass runs these steps in order:

1. reset the peer's edit to enough tracks for the project
2. load every plugin node in chain order (default instrument as fallback)
3. replay cached parameter values for each loaded plugin
4. clear the peer's audio clips
5. place every audio clip with a resolvable source file
6. re-apply the mixer state of every track
7. ensure the playback context and restore the transport position

Only step 1 is fatal. Every other failure is counted into a typed summary
and the pass carries on, so a single broken clip or plugin never blocks the
rest of the arrangement. Passes are serialized with a lock because each one
starts by clearing peer-side state.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from audio.analysis import estimate_leading_silence
from bridge.client import BridgeError, BridgeRequestError, PeerLink
from bridge.protocol import Command
from domain.models import MAX_TRACK_VOLUME, Clip, PluginNode, PluginParameter, Project
from domain.store import PluginResolution, clamp

logger = logging.getLogger(__name__)

DEFAULT_INSTRUMENT_UID = "internal:ultrasound"
DEFAULT_INSTRUMENT_NAME = "Ultrasound"
MIN_EDIT_TRACKS = 16
MAX_REPORTED_ERRORS = 10

SilenceEstimator = Callable[..., float]


class ReconciliationError(Exception):
    """Raised when the peer rejects the edit reset that starts a full pass."""


class ResyncScope(str, Enum):
    ARRANGEMENT = "arrangement"
    FULL = "full"


@dataclass
class ClipSyncSummary:
    total: int = 0
    synced: int = 0
    failed: int = 0
    last_errors: List[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.last_errors.append(message)
        del self.last_errors[:-MAX_REPORTED_ERRORS]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "synced": self.synced,
            "failed": self.failed,
            "last_errors": list(self.last_errors),
        }


@dataclass
class PluginRestoreResult:
    restored: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    resolutions: List[PluginResolution] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {"restored": self.restored, "failed": self.failed, "errors": list(self.errors)}


@dataclass
class TransportCapture:
    position_beats: float
    playing: bool


@dataclass
class ResyncReport:
    scope: ResyncScope
    clips: ClipSyncSummary
    plugins: Optional[PluginRestoreResult] = None
    mixer_failures: int = 0
    transport_restored: bool = False
    clear_error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.value,
            "clips": self.clips.to_payload(),
            "clear_error": self.clear_error,
            "plugins": self.plugins.to_payload() if self.plugins is not None else None,
            "mixer_failures": self.mixer_failures,
            "transport_restored": self.transport_restored,
        }


class ReconciliationEngine:
    """Drive the peer towards the project; never owns project state."""

    def __init__(
        self,
        link: PeerLink,
        *,
        default_instrument_uid: str = DEFAULT_INSTRUMENT_UID,
        silence_estimator: SilenceEstimator = estimate_leading_silence,
    ) -> None:
        self._link = link
        self._default_instrument_uid = default_instrument_uid
        self._estimate_silence = silence_estimator
        self._lock = asyncio.Lock()
        self.last_clip_sync: Optional[ClipSyncSummary] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def resync(
        self, project: Project, scope: ResyncScope = ResyncScope.FULL
    ) -> ResyncReport:
        """Run one pass; waits for any pass already in flight."""

        async with self._lock:
            capture = await self._capture_transport()
            plugins = None
            if scope is ResyncScope.FULL:
                await self._reset_edit(project)
                plugins = await self._restore_plugins(project)
            clear_error = await self._clear_audio_clips()
            clips = await self._sync_clips(project)
            mixer_failures = await self._apply_mixer(project)
            restored = await self._restore_transport(capture, project.bpm)
        report = ResyncReport(
            scope=scope,
            clips=clips,
            plugins=plugins,
            mixer_failures=mixer_failures,
            transport_restored=restored,
            clear_error=clear_error,
        )
        self.last_clip_sync = clips
        logger.info(
            "Resync (%s): clips %d/%d synced, %d failed%s",
            scope.value,
            clips.synced,
            clips.total,
            clips.failed,
            f"; plugins {plugins.restored} restored, {plugins.failed} failed" if plugins else "",
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    async def _capture_transport(self) -> Optional[TransportCapture]:
        try:
            state = await self._link.request(Command.TRANSPORT_GET_STATE, {})
        except BridgeError as exc:
            logger.debug("Could not capture transport before resync: %s", exc)
            return None
        position = state.get("positionBeats", state.get("position_beats", 0.0))
        try:
            beats = max(0.0, float(position))
        except (TypeError, ValueError):
            beats = 0.0
        return TransportCapture(position_beats=beats, playing=bool(state.get("playing")))

    async def _reset_edit(self, project: Project) -> None:
        try:
            await self._link.request(
                Command.EDIT_RESET, {"track_count": required_track_count(project)}
            )
        except BridgeError as exc:
            raise ReconciliationError(f"Peer rejected edit reset: {exc}") from exc

    async def _restore_plugins(self, project: Project) -> PluginRestoreResult:
        result = PluginRestoreResult()
        for node in ordered_plugin_nodes(project):
            await self._restore_node(node, result)
        return result

    async def _restore_node(self, node: PluginNode, result: PluginRestoreResult) -> None:
        uid = node.plugin_uid or node.plugin
        if not uid or node.track_id is None:
            result.failed += 1
            result.errors.append(f"{node.id}: missing plugin uid or track")
            return
        try:
            loaded = await self._load_plugin(node, uid)
        except BridgeError as exc:
            result.failed += 1
            result.errors.append(f"{node.id}: {exc}")
            logger.warning("Failed to restore plugin %s on track %s: %s", uid, node.track_id, exc)
            return

        info = loaded.get("plugin") if isinstance(loaded.get("plugin"), dict) else {}
        track_id = _as_int(info.get("trackId", info.get("track_id")), node.track_id)
        plugin_index = _as_int(
            info.get("pluginIndex", info.get("plugin_index")), node.plugin_index or 0
        )
        schema = parse_parameter_schema(info.get("parameters"))
        values = {entry.id: entry.value for entry in schema}
        values.update(node.params)

        applied: Dict[str, float] = {}
        for param_id, value in values.items():
            try:
                response = await self._link.request(
                    Command.VST_PARAM_SET,
                    {
                        "track_id": track_id,
                        "plugin_index": plugin_index,
                        "param_id": param_id,
                        "value": value,
                    },
                )
            except BridgeError as exc:
                result.errors.append(f"{node.id}.{param_id}: {exc}")
                continue
            parameter = response.get("parameter") if isinstance(response, dict) else None
            reported = parameter.get("value") if isinstance(parameter, dict) else None
            applied[param_id] = float(reported) if isinstance(reported, (int, float)) else value

        if node.bypassed:
            try:
                await self._link.request(
                    Command.VST_BYPASS_SET,
                    {"track_id": track_id, "plugin_index": plugin_index, "bypassed": True},
                )
            except BridgeError as exc:
                result.errors.append(f"{node.id}: bypass {exc}")

        result.restored += 1
        result.resolutions.append(
            PluginResolution(
                node_id=node.id,
                plugin_uid=str(info.get("uid") or uid),
                plugin_name=str(info.get("name")) if info.get("name") else None,
                track_id=track_id,
                plugin_index=plugin_index,
                parameter_schema=tuple(schema),
                params=applied,
            )
        )

    async def _load_plugin(self, node: PluginNode, uid: str) -> Dict[str, Any]:
        payload = {"plugin_uid": uid, "track_id": node.track_id}
        try:
            return await self._link.request(Command.VST_LOAD, payload)
        except BridgeRequestError as exc:
            if node.plugin_uid or "not found" not in exc.message.lower():
                raise
            logger.info(
                "Plugin %r not found on peer; substituting %s", uid, self._default_instrument_uid
            )
        loaded = await self._link.request(
            Command.VST_LOAD,
            {"plugin_uid": self._default_instrument_uid, "track_id": node.track_id},
        )
        info = loaded.get("plugin")
        if isinstance(info, dict):
            info.setdefault("uid", self._default_instrument_uid)
            info.setdefault("name", DEFAULT_INSTRUMENT_NAME)
        else:
            loaded["plugin"] = {
                "uid": self._default_instrument_uid,
                "name": DEFAULT_INSTRUMENT_NAME,
            }
        return loaded

    async def _clear_audio_clips(self) -> Optional[str]:
        """Drop the peer's placed clips; a failure is reported, not fatal."""

        try:
            await self._link.request(Command.EDIT_CLEAR_AUDIO_CLIPS, {})
        except BridgeError as exc:
            logger.warning("Peer failed to clear audio clips: %s", exc)
            return str(exc)
        return None

    async def _sync_clips(self, project: Project) -> ClipSyncSummary:
        summary = ClipSyncSummary()
        for track in project.tracks:
            for clip in track.clips:
                if not clip.is_audio or not clip.source_path:
                    continue
                summary.total += 1
                await self._sync_clip(project, track.track_id, clip, summary)
        return summary

    async def _sync_clip(
        self, project: Project, track_id: int, clip: Clip, summary: ClipSyncSummary
    ) -> None:
        label = clip.source_name or clip.id
        try:
            path = Path(clip.source_path or "").resolve(strict=True)
        except (OSError, RuntimeError):
            summary.record_failure(f"{label}: source file not found")
            return
        if not path.is_file():
            summary.record_failure(f"{label}: source file not found")
            return
        if not os.access(path, os.R_OK):
            summary.record_failure(f"{label}: file not readable")
            return

        start_seconds = project.bars_to_seconds(clip.start)
        length_seconds = project.bars_to_seconds(clip.length)
        offset = await asyncio.to_thread(
            self._estimate_silence,
            path,
            peaks=list(clip.waveform_peaks),
            duration_seconds=clip.source_duration_seconds or length_seconds,
        )
        payload: Dict[str, Any] = {
            "track_id": track_id,
            "source_path": str(path),
            "start": clip.start,
            "length": clip.length,
            "start_seconds": round(start_seconds, 6),
            "length_seconds": round(length_seconds, 6),
            "fade_in": clip.fade_in,
            "fade_out": clip.fade_out,
            "fade_in_curve": clip.fade_in_curve,
            "fade_out_curve": clip.fade_out_curve,
            "type": clip.type,
        }
        if offset > 0:
            payload["source_offset_seconds"] = round(offset, 4)
        try:
            await self._link.request(Command.CLIP_IMPORT_FILE, payload)
        except BridgeError as exc:
            summary.record_failure(f"{label}: {exc}")
            return
        summary.synced += 1

    async def _apply_mixer(self, project: Project) -> int:
        failures = 0
        for track in project.tracks:
            entry = project.mixer_entry(track.track_id)
            if entry is None:
                continue
            commands = (
                (Command.TRACK_SET_VOLUME, {"volume": clamp(entry.volume, 0.0, MAX_TRACK_VOLUME)}),
                (Command.TRACK_SET_PAN, {"pan": clamp(entry.pan, -1.0, 1.0)}),
                (Command.TRACK_SET_MUTE, {"mute": entry.mute}),
                (Command.TRACK_SET_SOLO, {"solo": entry.solo}),
                (Command.TRACK_SET_RECORD_ARM, {"record_armed": entry.record_armed}),
            )
            for command, values in commands:
                try:
                    await self._link.request(command, {"track_id": track.track_id, **values})
                except BridgeError as exc:
                    failures += 1
                    logger.debug("%s for track %d failed: %s", command, track.track_id, exc)
        return failures

    async def _restore_transport(self, capture: Optional[TransportCapture], bpm: float) -> bool:
        try:
            await self._link.request(Command.TRANSPORT_ENSURE_CONTEXT, {})
        except BridgeError as exc:
            logger.warning("Peer failed to ensure playback context: %s", exc)
        if capture is None or (capture.position_beats <= 0 and not capture.playing):
            return False
        try:
            if capture.position_beats > 0:
                await self._link.request(
                    Command.TRANSPORT_SEEK, {"position_beats": capture.position_beats}
                )
            if capture.playing:
                await self._link.request(Command.TRANSPORT_PLAY, {})
                await self._link.request(Command.TRANSPORT_SET_BPM, {"bpm": bpm})
        except BridgeError as exc:
            logger.warning("Could not restore transport after resync: %s", exc)
            return False
        return True


def required_track_count(project: Project) -> int:
    highest_node = max(
        (node.track_id for node in project.nodes if node.track_id is not None), default=0
    )
    return max(MIN_EDIT_TRACKS, highest_node, project.max_track_id())


def ordered_plugin_nodes(project: Project) -> List[PluginNode]:
    """Plugin nodes sorted by track, chain index, then document order."""

    indexed = [
        (position, node)
        for position, node in enumerate(project.nodes)
        if node.is_plugin and node.track_id is not None
    ]
    indexed.sort(
        key=lambda item: (
            item[1].track_id,
            item[1].plugin_index if item[1].plugin_index is not None else item[0],
            item[0],
        )
    )
    return [node for _, node in indexed]


def parse_parameter_schema(raw: Any) -> List[PluginParameter]:
    """Normalize the peer's parameter list, skipping entries without an id."""

    schema: List[PluginParameter] = []
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        return schema
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        identifier = entry.get("id", entry.get("param_id"))
        if identifier is None or str(identifier) == "":
            continue
        minimum = _as_float(entry.get("min"), 0.0)
        maximum = _as_float(entry.get("max"), 1.0)
        if maximum < minimum:
            minimum, maximum = maximum, minimum
        value = clamp(_as_float(entry.get("value", entry.get("default")), minimum), minimum, maximum)
        schema.append(
            PluginParameter(
                id=str(identifier),
                name=str(entry.get("name") or identifier),
                min=minimum,
                max=maximum,
                value=value,
            )
        )
    return schema


def _as_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return int(value)
    return fallback


def _as_float(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return float(value)


__all__ = [
    "ClipSyncSummary",
    "DEFAULT_INSTRUMENT_NAME",
    "DEFAULT_INSTRUMENT_UID",
    "PluginRestoreResult",
    "ReconciliationEngine",
    "ReconciliationError",
    "ResyncReport",
    "ResyncScope",
    "TransportCapture",
    "ordered_plugin_nodes",
    "parse_parameter_schema",
    "required_track_count",
]
