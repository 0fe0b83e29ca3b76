"""Wire format spoken with the native peer.

Every frame is a 4-byte big-endian length prefix followed by a msgpack map.
Three message kinds travel over the socket::

    {"type": "request",  "id": 7, "cmd": "transport.play", "payload": {...}}
    {"type": "response", "id": 7, "ok": true, "payload": {...}, "error": null}
    {"type": "event", "event": "transport.tick", "payload": {...}}
"""
from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

import msgpack

FRAME_HEADER = struct.Struct(">I")
MAX_FRAME_BYTES = 16 * 1024 * 1024


class ProtocolError(ValueError):
    """Raised for frames that cannot be decoded into a known message."""


class Command:
    """Command vocabulary understood by the native peer."""

    TRANSPORT_PLAY = "transport.play"
    TRANSPORT_PAUSE = "transport.pause"
    TRANSPORT_STOP = "transport.stop"
    TRANSPORT_SEEK = "transport.seek"
    TRANSPORT_SET_BPM = "transport.set_bpm"
    TRANSPORT_GET_STATE = "transport.get_state"
    TRANSPORT_ENSURE_CONTEXT = "transport:ensure-context"
    TRACK_SET_VOLUME = "track:set-volume"
    TRACK_SET_PAN = "track:set-pan"
    TRACK_SET_MUTE = "track:set-mute"
    TRACK_SET_SOLO = "track:set-solo"
    TRACK_SET_RECORD_ARM = "track:set-record-arm"
    VST_SCAN = "vst:scan"
    VST_LOAD = "vst:load"
    VST_PARAM_SET = "vst:param:set"
    VST_BYPASS_SET = "vst:bypass:set"
    VST_EDITOR_OPEN = "vst:editor:open"
    VST_REMOVE = "vst:remove"
    CLIP_IMPORT_FILE = "clip:import-file"
    EDIT_CLEAR_AUDIO_CLIPS = "edit:clear-audio-clips"
    EDIT_RESET = "edit:reset"
    BACKEND_INFO = "backend.info"


class PeerEvent:
    TICK = "transport.tick"
    STATE = "transport.state"


@dataclass(frozen=True)
class Request:
    id: int
    cmd: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": "request", "id": self.id, "cmd": self.cmd, "payload": self.payload}


@dataclass(frozen=True)
class Response:
    id: int
    ok: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "response",
            "id": self.id,
            "ok": self.ok,
            "payload": self.payload,
            "error": self.error,
        }


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": "event", "event": self.name, "payload": self.payload}


Message = Union[Request, Response, Event]


def encode_frame(message: Mapping[str, Any]) -> bytes:
    body = msgpack.packb(dict(message), use_bin_type=True)
    if len(body) > MAX_FRAME_BYTES:
        raise ProtocolError(f"Frame of {len(body)} bytes exceeds {MAX_FRAME_BYTES}")
    return FRAME_HEADER.pack(len(body)) + body


def decode_body(body: bytes) -> Message:
    try:
        raw = msgpack.unpackb(body, raw=False)
    except (msgpack.UnpackException, ValueError) as exc:
        raise ProtocolError(f"Undecodable frame: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("Frame body must be a map")
    return parse_message(raw)


def parse_message(raw: Mapping[str, Any]) -> Message:
    kind = raw.get("type")
    payload = raw.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    if kind == "response":
        identifier = raw.get("id")
        if not isinstance(identifier, int):
            raise ProtocolError("Response without integer id")
        error = raw.get("error")
        return Response(
            id=identifier,
            ok=bool(raw.get("ok")),
            payload=payload,
            error=str(error) if error is not None else None,
        )
    if kind == "event":
        name = raw.get("event")
        if not isinstance(name, str):
            raise ProtocolError("Event without a name")
        return Event(name=name, payload=payload)
    if kind == "request":
        identifier = raw.get("id")
        cmd = raw.get("cmd")
        if not isinstance(identifier, int) or not isinstance(cmd, str):
            raise ProtocolError("Request without id or command")
        return Request(id=identifier, cmd=cmd, payload=payload)
    raise ProtocolError(f"Unknown message type {kind!r}")


async def read_message(reader: asyncio.StreamReader) -> Message:
    """Read one frame; raises ``asyncio.IncompleteReadError`` at end of stream."""

    header = await reader.readexactly(FRAME_HEADER.size)
    (length,) = FRAME_HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise ProtocolError(f"Incoming frame of {length} bytes exceeds {MAX_FRAME_BYTES}")
    return decode_body(await reader.readexactly(length))


__all__ = [
    "Command",
    "Event",
    "FRAME_HEADER",
    "MAX_FRAME_BYTES",
    "Message",
    "PeerEvent",
    "ProtocolError",
    "Request",
    "Response",
    "decode_body",
    "encode_frame",
    "parse_message",
    "read_message",
]
