"""Snapshot-based undo/redo history for project documents.

Each entry is a deep copy of the whole project plus a canonical JSON key used
to detect net-no-op mutations. Full snapshots keep undo trivially correct for
every mutation kind at the cost of memory proportional to project size times
the stack limit.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .models import Project

logger = logging.getLogger(__name__)

PROJECT_HISTORY_LIMIT = 128

ApplySnapshot = Callable[[Project], Awaitable[object]]


class HistoryEmptyError(LookupError):
    """Raised when undo or redo is requested with an empty stack."""


def project_key(project: Project) -> str:
    """Return the canonical comparison key for ``project``."""

    return json.dumps(project.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class HistoryEntry:
    project: Project
    key: str

    @classmethod
    def capture(cls, project: Project) -> HistoryEntry:
        snapshot = project.model_copy(deep=True)
        return cls(project=snapshot, key=project_key(snapshot))


class ProjectHistory:
    """Bounded undo/redo stacks around a baseline snapshot.

    ``record`` is called after every successful structural mutation; the
    previous baseline is pushed only when the new state differs from it.
    ``undo``/``redo`` hand the target snapshot to an async ``apply`` callback
    (the reconciliation path) and roll the stacks back if it raises.
    """

    def __init__(self, limit: int = PROJECT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self._limit = limit
        self._undo: List[HistoryEntry] = []
        self._redo: List[HistoryEntry] = []
        self._baseline: Optional[HistoryEntry] = None

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    @property
    def baseline_key(self) -> Optional[str]:
        return self._baseline.key if self._baseline is not None else None

    def describe(self) -> Dict[str, object]:
        """Return observer-facing metadata."""

        return {
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
            "undo_depth": self.undo_depth,
            "redo_depth": self.redo_depth,
        }

    def reset(self, project: Project) -> None:
        """Clear both stacks and make ``project`` the new baseline (load path)."""

        self._undo.clear()
        self._redo.clear()
        self._baseline = HistoryEntry.capture(project)

    def rebaseline(self, project: Project) -> None:
        """Adopt ``project`` as the baseline without recording an entry."""

        self._baseline = HistoryEntry.capture(project)

    def record(self, project: Project) -> bool:
        """Record a post-mutation state; return ``True`` when an entry was pushed."""

        current = HistoryEntry.capture(project)
        previous = self._baseline
        if previous is None:
            self._baseline = current
            return False
        if current.key == previous.key:
            return False
        if not self._undo or self._undo[-1].key != previous.key:
            self._push(self._undo, previous)
        self._redo.clear()
        self._baseline = current
        return True

    async def undo(self, current: Project, apply: ApplySnapshot) -> Project:
        """Step back one entry; ``current`` moves onto the redo stack."""

        return await self._travel(self._undo, self._redo, current, apply, "undo")

    async def redo(self, current: Project, apply: ApplySnapshot) -> Project:
        """Step forward one entry; ``current`` moves onto the undo stack."""

        return await self._travel(self._redo, self._undo, current, apply, "redo")

    # ------------------------------------------------------------------
    # Internal helpers
    async def _travel(
        self,
        source: List[HistoryEntry],
        destination: List[HistoryEntry],
        current: Project,
        apply: ApplySnapshot,
        label: str,
    ) -> Project:
        if not source:
            raise HistoryEmptyError(f"Nothing to {label}")
        saved = (list(self._undo), list(self._redo), self._baseline)
        target = source.pop()
        self._push(destination, HistoryEntry.capture(current))
        try:
            await apply(target.project.model_copy(deep=True))
        except Exception:
            self._undo, self._redo, self._baseline = list(saved[0]), list(saved[1]), saved[2]
            logger.warning("History %s failed; stacks restored", label)
            raise
        self._baseline = target
        return target.project.model_copy(deep=True)

    def _push(self, stack: List[HistoryEntry], entry: HistoryEntry) -> None:
        stack.append(entry)
        overflow = len(stack) - self._limit
        if overflow > 0:
            del stack[:overflow]


__all__ = [
    "HistoryEmptyError",
    "HistoryEntry",
    "PROJECT_HISTORY_LIMIT",
    "ProjectHistory",
    "project_key",
]
