"""Persistence helpers for reading and writing project documents."""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from .models import DEFAULT_PATTERN_LENGTH, Project

DOCUMENT_EXTENSION = ".stu"


class ProjectDocumentError(ValueError):
    """Raised when a document is not a well-formed project."""


class ProjectSerializer:
    """Serialize :class:`Project` instances to/from JSON-compatible dicts."""

    @staticmethod
    def to_dict(project: Project) -> Dict[str, Any]:
        """Convert a project to a JSON-ready dictionary."""

        return project.model_dump(mode="json")

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> Project:
        """Normalize and validate serialized data into a project.

        Raises :class:`ProjectDocumentError` when the payload cannot become an
        authoritative project; the message lists every offending location.
        """

        if not isinstance(payload, dict):
            raise ProjectDocumentError("Project document must be a JSON object")
        try:
            return Project.model_validate(ProjectSerializer.normalize(payload))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
                for error in exc.errors()
            )
            raise ProjectDocumentError(f"Invalid project document: {problems}") from exc

    @staticmethod
    def normalize(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Fill structural gaps that older documents leave behind.

        * patterns are de-duplicated by id (first occurrence wins)
        * clips pointing at a missing pattern get an empty legacy pattern
        * tracks are ordered by id and every track receives a mixer entry
        """

        document = copy.deepcopy(payload)
        tracks = _collection(document.get("tracks", document.pop("playlist", None)), "tracks")

        patterns: List[Dict[str, Any]] = []
        known: set = set()
        for pattern in _collection(document.get("patterns"), "patterns"):
            pattern_id = pattern.get("id") if isinstance(pattern, dict) else None
            if pattern_id in known:
                continue
            known.add(pattern_id)
            patterns.append(pattern)

        for position, track in enumerate(tracks):
            if not isinstance(track, dict):
                continue
            for clip in _collection(track.get("clips"), f"tracks.{position}.clips"):
                if not isinstance(clip, dict):
                    continue
                reference = _pattern_reference(clip)
                if reference and reference not in known:
                    known.add(reference)
                    patterns.append(
                        {"id": reference, "type": "drum", "length": DEFAULT_PATTERN_LENGTH}
                    )

        tracks = sorted(
            tracks,
            key=lambda track: _track_key(track) if isinstance(track, dict) else 0,
        )
        mixer = [
            entry
            for entry in _collection(document.get("mixer"), "mixer")
            if isinstance(entry, dict)
        ]
        track_ids = [_track_key(track) for track in tracks if isinstance(track, dict)]
        mixer = [entry for entry in mixer if _track_key(entry) in track_ids]
        mixed = {_track_key(entry) for entry in mixer}
        for track_id in track_ids:
            if track_id not in mixed:
                mixer.append({"track_id": track_id})
        mixer.sort(key=_track_key)

        document["tracks"] = tracks
        document["patterns"] = patterns
        document["mixer"] = mixer
        return document


class ProjectFileAdapter:
    """Filesystem adapter that persists project documents under a base path."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path

    def save(self, project: Project, filename: str) -> Path:
        """Write the project to ``base_path / filename`` and return the path."""

        destination = self.base_path / filename
        destination.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(ProjectSerializer.to_dict(project), indent=2)
        destination.write_text(data, encoding="utf-8")
        return destination

    def load(self, filename: str) -> Project:
        """Load the project stored at ``base_path / filename``."""

        source = self.base_path / filename
        try:
            payload = json.loads(source.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ProjectDocumentError(f"{source} is not valid JSON: {exc}") from exc
        return ProjectSerializer.from_dict(payload)


def _collection(value: Any, location: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProjectDocumentError(
            f"Invalid project document: {location} must be a list, got {type(value).__name__}"
        )
    return value


def _pattern_reference(clip: Dict[str, Any]) -> str | None:
    for key in ("pattern_id", "patternId", "pattern"):
        value = clip.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _track_key(entry: Dict[str, Any]) -> int:
    for key in ("track_id", "trackId", "track"):
        value = entry.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return 0


__all__ = [
    "DOCUMENT_EXTENSION",
    "ProjectDocumentError",
    "ProjectFileAdapter",
    "ProjectSerializer",
]
