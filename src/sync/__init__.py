"""Engine session layer: mutation routing, reconciliation and broadcasting."""
from .broadcast import METER_EVENT, STATE_EVENT, TRANSPORT_EVENT, Broadcaster
from .config import EngineSettings
from .handlers import MUTATIONS, MutationOutcome, UnknownMutationError, resolve_handler
from .reconcile import (
    ClipSyncSummary,
    PluginRestoreResult,
    ReconciliationEngine,
    ReconciliationError,
    ResyncReport,
    ResyncScope,
)
from .session import SyncSession

__all__ = [
    "Broadcaster",
    "ClipSyncSummary",
    "EngineSettings",
    "METER_EVENT",
    "MUTATIONS",
    "MutationOutcome",
    "PluginRestoreResult",
    "ReconciliationEngine",
    "ReconciliationError",
    "ResyncReport",
    "ResyncScope",
    "STATE_EVENT",
    "SyncSession",
    "TRANSPORT_EVENT",
    "UnknownMutationError",
    "resolve_handler",
]
