"""Repository abstractions for project persistence backends.

These interfaces layer on top of :mod:`domain.persistence` so the engine
session can load and save documents by identifier without caring whether
they live in a projects directory or in memory (tests, scratch sessions).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

from .models import Project
from .persistence import DOCUMENT_EXTENSION, ProjectFileAdapter


class ProjectRepositoryError(Exception):
    """Base error for repository failures."""


class ProjectNotFoundError(ProjectRepositoryError):
    """Raised when a requested project cannot be located."""


@dataclass(frozen=True)
class ProjectSummary:
    """Lightweight descriptor for enumerating stored projects."""

    identifier: str
    name: str
    updated_at: datetime
    location: str
    track_count: int = 0


class ProjectRepository(Protocol):
    """Minimal interface shared by the repositories."""

    def save(self, project: Project, identifier: str) -> ProjectSummary:
        """Persist the project under ``identifier`` and return a summary."""

    def load(self, identifier: str) -> Project:
        """Retrieve a project by identifier."""

    def delete(self, identifier: str) -> None:
        """Remove the project from the backing store."""

    def list(self) -> Iterable[ProjectSummary]:
        """Iterate over available projects."""


def _validate_identifier(identifier: str) -> str:
    cleaned = identifier.strip()
    if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."}:
        raise ProjectRepositoryError(f"Invalid project identifier {identifier!r}")
    return cleaned


class LocalProjectRepository(ProjectRepository):
    """Filesystem-backed repository using :class:`ProjectFileAdapter`."""

    def __init__(
        self, adapter: ProjectFileAdapter, *, extension: str = DOCUMENT_EXTENSION
    ) -> None:
        self._adapter = adapter
        self._extension = extension

    @classmethod
    def from_environment(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        extension: str = DOCUMENT_EXTENSION,
    ) -> LocalProjectRepository:
        """Build a repository rooted at ``$STUU_HOME/projects``.

        ``STUU_PROJECTS_DIR`` overrides the directory outright; without either
        variable the repository lives in ``~/.stuu/projects``.
        """

        environment: Mapping[str, str] = env if env is not None else os.environ
        explicit = environment.get("STUU_PROJECTS_DIR")
        if explicit:
            base_path = Path(explicit).expanduser()
        else:
            home = environment.get("STUU_HOME") or str(Path.home() / ".stuu")
            base_path = Path(home).expanduser() / "projects"
        return cls(ProjectFileAdapter(base_path), extension=extension)

    @property
    def base_path(self) -> Path:
        return self._adapter.base_path

    def _path_for(self, identifier: str) -> Path:
        return self._adapter.base_path / f"{_validate_identifier(identifier)}{self._extension}"

    def _summary(self, identifier: str, project: Project, path: Path) -> ProjectSummary:
        return ProjectSummary(
            identifier=identifier,
            name=project.project_name,
            updated_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
            location=str(path),
            track_count=len(project.tracks),
        )

    def save(self, project: Project, identifier: str) -> ProjectSummary:
        path = self._path_for(identifier)
        destination = self._adapter.save(project, path.name)
        return self._summary(identifier, project, destination)

    def load(self, identifier: str) -> Project:
        path = self._path_for(identifier)
        if not path.exists():
            raise ProjectNotFoundError(f"Project {identifier!r} not found at {path}")
        return self._adapter.load(path.name)

    def delete(self, identifier: str) -> None:
        path = self._path_for(identifier)
        if not path.exists():
            raise ProjectNotFoundError(f"Project {identifier!r} not found at {path}")
        path.unlink()

    def list(self) -> Iterable[ProjectSummary]:
        if not self._adapter.base_path.exists():
            return
        for file_path in sorted(self._adapter.base_path.glob(f"*{self._extension}")):
            project = self._adapter.load(file_path.name)
            yield self._summary(file_path.stem, project, file_path)


class InMemoryProjectRepository(ProjectRepository):
    """Dictionary-backed repository suitable for tests or scratch sessions."""

    def __init__(self) -> None:
        self._storage: Dict[str, tuple[Project, datetime]] = {}

    def save(self, project: Project, identifier: str) -> ProjectSummary:
        key = _validate_identifier(identifier)
        stamp = datetime.now(UTC)
        self._storage[key] = (project.model_copy(deep=True), stamp)
        return ProjectSummary(
            identifier=key,
            name=project.project_name,
            updated_at=stamp,
            location="in-memory",
            track_count=len(project.tracks),
        )

    def load(self, identifier: str) -> Project:
        try:
            project, _ = self._storage[identifier]
        except KeyError as exc:
            raise ProjectNotFoundError(f"Project {identifier!r} not found in memory") from exc
        return project.model_copy(deep=True)

    def delete(self, identifier: str) -> None:
        if identifier not in self._storage:
            raise ProjectNotFoundError(f"Project {identifier!r} not found in memory")
        del self._storage[identifier]

    def list(self) -> Iterable[ProjectSummary]:
        for identifier, (project, stamp) in sorted(self._storage.items()):
            yield ProjectSummary(
                identifier=identifier,
                name=project.project_name,
                updated_at=stamp,
                location="in-memory",
                track_count=len(project.tracks),
            )


__all__ = [
    "InMemoryProjectRepository",
    "LocalProjectRepository",
    "ProjectNotFoundError",
    "ProjectRepository",
    "ProjectRepositoryError",
    "ProjectSummary",
]
