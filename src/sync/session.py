"""Engine session wiring the store, history, clock and native peer together.

The session is the single entry point for clients: it routes named
mutations, records history, drives reconciliation while the peer is active,
owns transport control, and broadcasts state, transport and meter updates to
observers. Exactly one session owns a given store.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Set

from audio.meters import estimate_track_meters
from bridge.catalog import PluginCatalog, PluginDescriptor
from bridge.client import BridgeClient, BridgeError, BridgeNotConnectedError, PeerLink
from bridge.protocol import Command, PeerEvent
from domain.history import ProjectHistory
from domain.models import Project
from domain.persistence import ProjectDocumentError, ProjectSerializer
from domain.repository import ProjectRepository, ProjectSummary
from domain.store import ProjectStore
from transport.clock import TransportClock, TransportSnapshot

from .broadcast import METER_EVENT, STATE_EVENT, TRANSPORT_EVENT, Broadcaster
from .config import EngineSettings
from .handlers import MutationOutcome, resolve_handler
from .reconcile import ReconciliationEngine, ReconciliationError, ResyncReport, ResyncScope

logger = logging.getLogger(__name__)

TEMPO_TOLERANCE = 1e-3


class SyncSession:
    """Owns one project and keeps observers and the native peer in step with it."""

    def __init__(
        self,
        store: Optional[ProjectStore] = None,
        *,
        link: Optional[PeerLink] = None,
        settings: Optional[EngineSettings] = None,
        history: Optional[ProjectHistory] = None,
        clock: Optional[TransportClock] = None,
        broadcaster: Optional[Broadcaster] = None,
        repository: Optional[ProjectRepository] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.store = store or ProjectStore()
        self.history = history or ProjectHistory(self.settings.history_limit)
        project = self.store.project
        self.clock = clock or TransportClock(bpm=project.bpm, beats_per_bar=project.beats_per_bar)
        self.broadcaster = broadcaster or Broadcaster()
        self.repository = repository
        self.link = link
        self.reconciler: Optional[ReconciliationEngine] = None
        self.catalog: Optional[PluginCatalog] = None
        if link is not None:
            self.reconciler = ReconciliationEngine(
                link, default_instrument_uid=self.settings.default_instrument_uid
            )
            self.catalog = PluginCatalog(link)
        if isinstance(link, BridgeClient):
            link.add_connect_listener(self._on_peer_connected)
            link.add_disconnect_listener(self.handle_peer_disconnected)
            link.add_event_listener(self.handle_peer_event)
        self.last_resync: Optional[ResyncReport] = None
        self._peer_active = False
        self._tasks: Set[asyncio.Task] = set()
        self._ticker: Optional[asyncio.Task] = None
        self._edit_lock = asyncio.Lock()
        self.history.reset(self.store.project)

    @property
    def peer_active(self) -> bool:
        return self._peer_active and self.link is not None and self.link.connected

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Connect to the peer (when enabled) and start the ticker."""

        if isinstance(self.link, BridgeClient) and self.settings.native_transport:
            if not await self.link.connect():
                logger.info("Native peer not reachable; running on the simulated clock")
                self.link.start_reconnecting()
        self.start_ticker()
        self.broadcast_state()

    async def shutdown(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
            self._ticker = None
        if isinstance(self.link, BridgeClient):
            await self.link.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle_peer_connected(self) -> Optional[ResyncReport]:
        """Hand transport to the peer and push the whole project to it."""

        if self.link is None or self.reconciler is None:
            return None
        if self.catalog is not None:
            self.catalog.invalidate()
        self._peer_active = True
        self.clock.enter_peer_mode()
        try:
            await self.link.request(Command.TRANSPORT_SET_BPM, {"bpm": self.store.project.bpm})
        except BridgeError as exc:
            logger.warning("Could not assert tempo on connect: %s", exc)
        async with self._edit_lock:
            report = await self._resync(ResyncScope.FULL)
            self.history.rebaseline(self.store.project)
        self.broadcast_state()
        return report

    def handle_peer_disconnected(self) -> None:
        """Fall back to the simulated clock from the last peer position."""

        self._peer_active = False
        if self.catalog is not None:
            self.catalog.invalidate()
        self.clock.peer_disconnected()
        self.broadcast_state()
        self.broadcast_transport()

    def handle_peer_event(self, event: str, payload: Dict[str, Any]) -> None:
        if event not in (PeerEvent.TICK, PeerEvent.STATE):
            logger.debug("Ignoring peer event %s", event)
            return
        was_playing = self.clock.playing
        self.clock.apply_peer_report(payload)
        reported = payload.get("bpm")
        if (
            self.clock.playing != was_playing
            and isinstance(reported, (int, float))
            and abs(float(reported) - self.store.project.bpm) > TEMPO_TOLERANCE
        ):
            self._spawn(self._reassert_tempo())
        self.broadcast_transport()

    # ------------------------------------------------------------------
    # Mutations
    async def mutate(self, name: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        """Apply the named mutation and return its result.

        Validation failures raise before anything changes. Once the store
        accepted the edit, peer follow-up is best effort: failures are logged
        and reported through the clip-sync summary, never raised. Edits are
        serialized: a caller arriving while another edit is in flight waits
        for it, follow-up and history included.
        """

        handler = resolve_handler(name)
        async with self._edit_lock:
            outcome = await handler(self, dict(payload or {}))
            await self._follow_up(outcome)
            recorded = self.history.record(self.store.project)
        logger.debug("Mutation %s applied (history entry: %s)", name, recorded)
        self.broadcast_state()
        return outcome.result

    async def undo(self) -> Project:
        async with self._edit_lock:
            project = await self.history.undo(self.store.snapshot(), self._apply_snapshot)
            return self._after_travel(project)

    async def redo(self) -> Project:
        async with self._edit_lock:
            project = await self.history.redo(self.store.snapshot(), self._apply_snapshot)
            return self._after_travel(project)

    async def apply_project(self, project: Project, *, reset_history: bool = False) -> Project:
        """Make ``project`` authoritative.

        ``reset_history`` clears undo/redo (loading a document); otherwise the
        previous state becomes a new undo entry.
        """

        try:
            candidate = ProjectSerializer.from_dict(ProjectSerializer.to_dict(project))
        except ProjectDocumentError:
            logger.warning("Rejected project %r", project.project_name)
            raise
        async with self._edit_lock:
            await self._apply_snapshot(candidate)
            if reset_history:
                self.history.reset(self.store.project)
            else:
                self.history.record(self.store.project)
        self.broadcast_state()
        return self.store.snapshot()

    async def load_project(self, identifier: str) -> Project:
        if self.repository is None:
            raise RuntimeError("No project repository configured")
        project = self.repository.load(identifier)
        logger.info("Loading project %s", identifier)
        return await self.apply_project(project, reset_history=True)

    def save_project(self, identifier: str) -> ProjectSummary:
        if self.repository is None:
            raise RuntimeError("No project repository configured")
        summary = self.repository.save(self.store.project, identifier)
        logger.info("Saved project %s to %s", identifier, summary.location)
        return summary

    # ------------------------------------------------------------------
    # Transport
    async def play(self) -> TransportSnapshot:
        if self.peer_active:
            bpm = self.store.project.bpm
            await self.link_request(Command.TRANSPORT_SET_BPM, {"bpm": bpm})
            response = await self.link_request(Command.TRANSPORT_PLAY, {})
            self.clock.apply_peer_report(response, force_playing=True)
            await self.link_request(Command.TRANSPORT_SET_BPM, {"bpm": bpm})
        else:
            self.clock.play()
        return self.broadcast_transport()

    async def pause(self) -> TransportSnapshot:
        if self.peer_active:
            response = await self.link_request(Command.TRANSPORT_PAUSE, {})
            self.clock.apply_peer_report(response, force_playing=False)
        else:
            self.clock.pause()
        return self.broadcast_transport()

    async def stop(self) -> TransportSnapshot:
        if self.peer_active:
            response = await self.link_request(Command.TRANSPORT_STOP, {})
            self.clock.stop()
            self.clock.apply_peer_report(response, force_playing=False)
        else:
            self.clock.stop()
        return self.broadcast_transport()

    async def seek(self, position_beats: float) -> TransportSnapshot:
        beats = max(0.0, float(position_beats))
        if self.peer_active:
            response = await self.link_request(Command.TRANSPORT_SEEK, {"position_beats": beats})
            self.clock.seek(beats)
            self.clock.apply_peer_report(response)
        else:
            self.clock.seek(beats)
        return self.broadcast_transport()

    async def set_bpm(self, bpm: float) -> float:
        value = await self.mutate("project:bpm", {"bpm": bpm})
        return float(value)

    # ------------------------------------------------------------------
    # Plugins
    async def scan_plugins(self, *, refresh: bool = False) -> List[PluginDescriptor]:
        if self.catalog is None or not self.peer_active:
            raise BridgeNotConnectedError("Plugin scan requires the native peer")
        return await self.catalog.plugins(refresh=refresh)

    async def open_plugin_editor(self, node_id: str) -> Dict[str, Any]:
        node = self.store.project.node(node_id)
        if node is None or node.track_id is None:
            raise KeyError(node_id)
        return await self.link_request(
            Command.VST_EDITOR_OPEN,
            {"track_id": node.track_id, "plugin_index": node.plugin_index or 0},
        )

    async def link_request(
        self, command: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        if self.link is None or not self.link.connected:
            raise BridgeNotConnectedError(f"Cannot send {command!r}: native peer not connected")
        return await self.link.request(command, payload or {})

    # ------------------------------------------------------------------
    # Observers
    def state_payload(self) -> Dict[str, Any]:
        clip_sync = self.reconciler.last_clip_sync if self.reconciler is not None else None
        return {
            "project": ProjectSerializer.to_dict(self.store.project),
            "native_transport": self.peer_active,
            "history": self.history.describe(),
            "clip_sync": clip_sync.to_payload() if clip_sync is not None else None,
        }

    def broadcast_state(self) -> None:
        self.broadcaster.emit(STATE_EVENT, self.state_payload())

    def broadcast_transport(self, now: Optional[float] = None) -> TransportSnapshot:
        snapshot = self.clock.snapshot(now)
        self.broadcaster.emit(TRANSPORT_EVENT, snapshot.to_payload())
        return snapshot

    def tick(self, now: Optional[float] = None) -> TransportSnapshot:
        """Emit one transport and meter update; no I/O."""

        snapshot = self.broadcast_transport(now)
        meters = estimate_track_meters(
            self.store.project,
            position_bars=snapshot.position_bars,
            playing=snapshot.playing,
            peer_active=self.peer_active,
        )
        self.broadcaster.emit(
            METER_EVENT,
            {
                "playing": snapshot.playing,
                "timestamp_ms": snapshot.timestamp_ms,
                "meters": [meter.to_payload() for meter in meters],
            },
        )
        return snapshot

    def start_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._run_ticker())

    # ------------------------------------------------------------------
    # Internal helpers
    async def _run_ticker(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.settings.tick_interval)

    def _on_peer_connected(self) -> None:
        self._spawn(self.handle_peer_connected())

    def _spawn(self, coroutine: Any) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background session task failed", exc_info=task.exception())

    async def _reassert_tempo(self) -> None:
        bpm = self.store.project.bpm
        try:
            await self.link_request(Command.TRANSPORT_SET_BPM, {"bpm": bpm})
        except BridgeError as exc:
            logger.warning("Could not re-assert tempo %.2f: %s", bpm, exc)
            return
        self.clock.set_bpm(bpm)

    async def _follow_up(self, outcome: MutationOutcome) -> None:
        if not self.peer_active:
            return
        for command, payload in outcome.commands:
            try:
                await self.link_request(command, payload)
            except BridgeError as exc:
                logger.warning("Peer command %s failed: %s", command, exc)
        if outcome.scope is not None:
            await self._resync(outcome.scope)

    async def _resync(self, scope: ResyncScope) -> Optional[ResyncReport]:
        if self.reconciler is None:
            return None
        try:
            report = await self.reconciler.resync(self.store.project, scope)
        except (BridgeError, ReconciliationError) as exc:
            logger.warning("Resync (%s) aborted: %s", scope.value, exc)
            return None
        self._fold_resolutions(report)
        self.last_resync = report
        return report

    def _fold_resolutions(self, report: ResyncReport) -> None:
        if report.plugins is not None and report.plugins.resolutions:
            self.store.apply_plugin_resolutions(report.plugins.resolutions)

    async def _apply_snapshot(self, project: Project) -> None:
        """Swap ``project`` in and drive the peer to it; restore on failure."""

        previous = self.store.snapshot()
        self.store.replace(project)
        try:
            if self.peer_active and self.reconciler is not None:
                await self.link_request(Command.TRANSPORT_STOP, {})
                await self.link_request(Command.TRANSPORT_SET_BPM, {"bpm": project.bpm})
                report = await self.reconciler.resync(self.store.project, ResyncScope.FULL)
                self._fold_resolutions(report)
                self.last_resync = report
        except Exception:
            self.store.replace(previous)
            raise
        self.clock.stop()
        self.clock.set_bpm(self.store.project.bpm)
        self.clock.set_beats_per_bar(self.store.project.beats_per_bar)

    def _after_travel(self, project: Project) -> Project:
        self.history.rebaseline(self.store.project)
        self.broadcast_state()
        self.broadcast_transport()
        return self.store.snapshot()


__all__ = ["SyncSession", "TEMPO_TOLERANCE"]
