"""Native peer bridge: wire codec, async RPC client and plugin catalog."""
from .catalog import PluginCatalog, PluginDescriptor
from .client import (
    BridgeClient,
    BridgeDisconnectedError,
    BridgeError,
    BridgeNotConnectedError,
    BridgeRequestError,
    BridgeTimeoutError,
    PeerLink,
)
from .protocol import Command, PeerEvent, ProtocolError, encode_frame, read_message

__all__ = [
    "BridgeClient",
    "BridgeDisconnectedError",
    "BridgeError",
    "BridgeNotConnectedError",
    "BridgeRequestError",
    "BridgeTimeoutError",
    "Command",
    "PeerEvent",
    "PeerLink",
    "PluginCatalog",
    "PluginDescriptor",
    "ProtocolError",
    "encode_frame",
    "read_message",
]
