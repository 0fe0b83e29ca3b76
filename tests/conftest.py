import asyncio
import itertools
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from bridge.client import BridgeDisconnectedError, BridgeRequestError
from domain.models import Clip, MixerEntry, Pattern, PluginNode, Project, Track

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakePeer:
    """Scripted stand-in for the native peer link.

    Records every request and answers the commands the engine relies on.
    ``fail(cmd, message)`` makes a command answer ``ok: false`` and
    ``fail_with(cmd, exc)`` raises an arbitrary exception instead.
    ``hold(cmd)`` parks the command until the returned event is set.
    """

    def __init__(self) -> None:
        self.connected = True
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.position_beats = 0.0
        self.playing = False
        self.bpm = 128.0
        self.parameters: List[Dict[str, Any]] = [
            {"id": "cutoff", "name": "Cutoff", "min": 0.0, "max": 1.0, "value": 0.5}
        ]
        self.catalog: List[Dict[str, Any]] = [
            {"uid": "vst3:synth", "name": "Synth", "is_instrument": True},
            {"uid": "vst3:reverb", "name": "Reverb", "category": "Fx"},
        ]
        self.missing_plugins: set = set()
        self._failures: Dict[str, BaseException] = {}
        self._responses: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {}
        self._chains: Dict[int, int] = {}
        self._gates: Dict[str, asyncio.Event] = {}

    def fail(self, command: str, message: str = "boom") -> None:
        self._failures[command] = BridgeRequestError(command, message)

    def fail_with(self, command: str, error: BaseException) -> None:
        self._failures[command] = error

    def clear_failure(self, command: str) -> None:
        self._failures.pop(command, None)

    def respond(self, command: str, handler: Callable[[Dict[str, Any]], Dict[str, Any]]) -> None:
        self._responses[command] = handler

    def hold(self, command: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[command] = gate
        return gate

    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]

    def payloads(self, command: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.calls if name == command]

    async def request(
        self, command: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        body = dict(payload or {})
        if not self.connected:
            raise BridgeDisconnectedError("native transport disconnected")
        self.calls.append((command, body))
        gate = self._gates.get(command)
        if gate is not None:
            await gate.wait()
        if command in self._failures:
            raise self._failures[command]
        if command in self._responses:
            return self._responses[command](body)
        return self._default_response(command, body)

    def _default_response(self, command: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if command == "edit:reset":
            self._chains = {}
            return {}
        if command == "transport.get_state":
            return {"positionBeats": self.position_beats, "playing": self.playing, "bpm": self.bpm}
        if command == "transport.play":
            self.playing = True
            return {"positionBeats": self.position_beats, "playing": True, "bpm": self.bpm}
        if command == "transport.pause":
            self.playing = False
            return {"positionBeats": self.position_beats, "playing": False}
        if command == "transport.stop":
            self.playing = False
            self.position_beats = 0.0
            return {"positionBeats": 0.0, "playing": False}
        if command == "transport.seek":
            self.position_beats = float(payload.get("position_beats", 0.0))
            return {"positionBeats": self.position_beats, "playing": self.playing}
        if command == "transport.set_bpm":
            self.bpm = float(payload["bpm"])
            return {"bpm": self.bpm}
        if command == "vst:scan":
            return {"plugins": list(self.catalog)}
        if command == "vst:load":
            uid = payload["plugin_uid"]
            if uid in self.missing_plugins:
                raise BridgeRequestError(command, f"Plugin {uid} not found")
            track_id = payload["track_id"]
            index = self._chains.get(track_id, 0)
            self._chains[track_id] = index + 1
            return {
                "plugin": {
                    "uid": uid,
                    "name": uid.split(":")[-1].title(),
                    "trackId": track_id,
                    "pluginIndex": index,
                    "parameters": [dict(entry) for entry in self.parameters],
                }
            }
        if command == "vst:param:set":
            return {"parameter": {"id": payload["param_id"], "value": payload["value"]}}
        return {}


def sequential_ids() -> Callable[[str], str]:
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(counter)}"


@pytest.fixture()
def fake_peer() -> FakePeer:
    return FakePeer()


@pytest.fixture()
def id_factory() -> Callable[[str], str]:
    return sequential_ids()


@pytest.fixture()
def example_project() -> Project:
    return Project(
        project_name="Example",
        bpm=120.0,
        tracks=[
            Track(
                track_id=1,
                name="Drums",
                clips=[Clip(id="clip-a", pattern_id="beat", start=0.0, length=2.0)],
            ),
            Track(track_id=2, name="Bass"),
            Track(track_id=3, name="Keys"),
        ],
        patterns=[Pattern(id="beat", type="drum", length=16)],
        mixer=[
            MixerEntry(track_id=1, volume=0.6),
            MixerEntry(track_id=2, volume=0.7, mute=True),
            MixerEntry(track_id=3, volume=0.9),
        ],
        nodes=[
            PluginNode(id="node-bass", plugin="Synth", plugin_uid="vst3:synth", track_id=2, plugin_index=0),
            PluginNode(id="node-keys", plugin="Keys", plugin_uid="vst3:keys", track_id=3, plugin_index=0),
        ],
    )
