"""Domain package exposing project models, the structural store and history."""
from .history import HistoryEmptyError, HistoryEntry, ProjectHistory, project_key
from .models import (
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
from .persistence import ProjectDocumentError, ProjectFileAdapter, ProjectSerializer
from .repository import (
    InMemoryProjectRepository,
    LocalProjectRepository,
    ProjectNotFoundError,
    ProjectRepository,
    ProjectRepositoryError,
    ProjectSummary,
)
from .requests import InvalidRequestError, parse_request
from .store import EntityNotFoundError, PluginResolution, ProjectEditError, ProjectStore

__all__ = [
    "Clip",
    "DrumStep",
    "EntityNotFoundError",
    "HistoryEmptyError",
    "HistoryEntry",
    "InMemoryProjectRepository",
    "InvalidRequestError",
    "LocalProjectRepository",
    "MidiNote",
    "MixerEntry",
    "Pattern",
    "PluginNode",
    "PluginParameter",
    "PluginResolution",
    "Project",
    "ProjectDocumentError",
    "ProjectEditError",
    "ProjectFileAdapter",
    "ProjectHistory",
    "ProjectNotFoundError",
    "ProjectRepository",
    "ProjectRepositoryError",
    "ProjectSerializer",
    "ProjectStore",
    "ProjectSummary",
    "TimeSignature",
    "Track",
    "parse_request",
    "project_key",
]
